"""Versioned schema migrations and the runner that applies them."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Iterator, Optional, Protocol

from ..errors import MigrationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Migration:
    """A reversible schema change."""

    version: int
    name: str
    up: str
    down: str


class MigrationRegistry:
    """Immutable, ascending-ordered collection of migrations."""

    def __init__(self, migrations: Iterable[Migration]) -> None:
        ordered = sorted(migrations, key=lambda m: m.version)
        seen: set[int] = set()
        for migration in ordered:
            if migration.version <= 0:
                raise ValueError(
                    f"Migration versions must be positive, got {migration.version}"
                )
            if migration.version in seen:
                raise ValueError(f"Duplicate migration version {migration.version}")
            seen.add(migration.version)
        self._migrations: tuple[Migration, ...] = tuple(ordered)

    def __iter__(self) -> Iterator[Migration]:
        return iter(self._migrations)

    def __len__(self) -> int:
        return len(self._migrations)

    def get(self, version: int) -> Optional[Migration]:
        for migration in self._migrations:
            if migration.version == version:
                return migration
        return None

    @property
    def versions(self) -> list[int]:
        return [m.version for m in self._migrations]

    @property
    def latest_version(self) -> int:
        return self._migrations[-1].version if self._migrations else 0


class MigrationExecutor(Protocol):
    """Database-side operations the runner needs from a store backend."""

    async def ensure_ledger(self) -> None:
        """Create the ``schema_migrations`` table when missing."""

    async def applied_versions(self) -> list[int]:
        """Return applied versions in ascending order."""

    async def apply_migration(self, migration: Migration) -> None:
        """Run ``up`` and insert the ledger row in a single transaction."""

    async def revert_migration(self, migration: Migration) -> None:
        """Run ``down`` and delete the ledger row in a single transaction."""


class MigrationRunner:
    """Apply and revert migrations from a registry against one executor.

    Each migration runs in its own transaction together with its ledger
    update, so a failed script leaves the ledger untouched and the next
    ``run()`` retries that migration from scratch.
    """

    def __init__(self, executor: MigrationExecutor, registry: MigrationRegistry) -> None:
        self._executor = executor
        self._registry = registry

    @property
    def registry(self) -> MigrationRegistry:
        return self._registry

    async def run(self) -> int:
        """Apply all pending migrations and return how many were applied."""
        await self._executor.ensure_ledger()
        applied = set(await self._executor.applied_versions())
        pending = [m for m in self._registry if m.version not in applied]

        if not pending:
            return 0

        for migration in pending:
            await self._apply(migration)
        return len(pending)

    async def rollback(self) -> bool:
        """Revert the most recently applied migration."""
        await self._executor.ensure_ledger()
        applied = await self._executor.applied_versions()
        if not applied:
            return False

        last_version = max(applied)
        migration = self._registry.get(last_version)
        if migration is None:
            raise MigrationError(
                f"Migration version {last_version} not found", version=last_version
            )
        await self._revert(migration)
        return True

    async def get_version(self) -> int:
        await self._executor.ensure_ledger()
        applied = await self._executor.applied_versions()
        return max(applied) if applied else 0

    async def reset(self) -> None:
        """Revert every applied migration, newest first. Drops all data."""
        await self._executor.ensure_ledger()
        applied = await self._executor.applied_versions()
        for version in sorted(applied, reverse=True):
            migration = self._registry.get(version)
            if migration is None:
                raise MigrationError(
                    f"Migration version {version} not found", version=version
                )
            await self._revert(migration)

    async def _apply(self, migration: Migration) -> None:
        logger.info(f"Applying migration {migration.version}: {migration.name}")
        try:
            await self._executor.apply_migration(migration)
        except MigrationError:
            raise
        except Exception as e:
            raise MigrationError(
                f"Migration {migration.version} ({migration.name}) failed: {e}",
                version=migration.version,
                name=migration.name,
            ) from e
        logger.info(f"Migration {migration.version} applied successfully")

    async def _revert(self, migration: Migration) -> None:
        logger.info(f"Reverting migration {migration.version}: {migration.name}")
        try:
            await self._executor.revert_migration(migration)
        except MigrationError:
            raise
        except Exception as e:
            raise MigrationError(
                f"Reverting migration {migration.version} ({migration.name}) failed: {e}",
                version=migration.version,
                name=migration.name,
            ) from e
        logger.info(f"Migration {migration.version} reverted successfully")
