from __future__ import annotations

import os
from typing import Literal, Optional
from urllib.parse import quote

import yaml
from pydantic import BaseModel, Field

DEFAULT_CONFIG_PATH = "durable_world.yaml"
CONFIG_ENV_VAR = "DURABLE_WORLD_CONFIG"
DATABASE_URL_ENV_VARS = ("DURABLE_WORLD_DATABASE_URL", "WORKFLOW_POSTGRES_URL")


class WorldConfig(BaseModel):
    """Connection settings for the workflow store."""

    backend: Literal["postgres", "sqlite"] = "postgres"
    connection_string: Optional[str] = None
    host: str = "postgres"
    port: int = 5432
    database: str = "workflow"
    user: str = "postgres"
    password: str = "password"
    ssl: bool = False
    max_connections: int = Field(default=10, ge=1)
    idle_timeout: float = 20
    connect_timeout: float = 10
    sqlite_path: str = ":memory:"

    def dsn(self) -> str:
        """Return the connection string, building a postgres URL if none is set."""
        if self.connection_string:
            return self.connection_string
        if self.backend == "sqlite":
            return f"sqlite://{self.sqlite_path}"
        return (
            f"postgres://{quote(self.user, safe='')}:{quote(self.password, safe='')}"
            f"@{self.host}:{self.port}/{self.database}"
        )


def load_config(path: Optional[str] = None) -> WorldConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to the
            DURABLE_WORLD_CONFIG env variable or 'durable_world.yaml' in the
            current directory.
    """

    config_path = path or os.getenv(CONFIG_ENV_VAR, DEFAULT_CONFIG_PATH)
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = WorldConfig(**data)
    else:
        config = WorldConfig()

    for env_var in DATABASE_URL_ENV_VARS:
        env_db_url = os.getenv(env_var)
        if env_db_url:
            config.connection_string = env_db_url
            break
    return config
