import asyncio
from datetime import timedelta

import pytest
from typer.testing import CliRunner

from durable_world.cli import app
from durable_world.persistence import SQLiteWorkflowStore
from durable_world.persistence.models import WorkflowRun, utcnow
from durable_world.world import World


@pytest.fixture
def db_path(tmp_path, monkeypatch):
    path = tmp_path / "wf.db"
    monkeypatch.setenv("DURABLE_WORLD_CONFIG", str(tmp_path / "missing.yaml"))
    monkeypatch.delenv("WORKFLOW_POSTGRES_URL", raising=False)
    monkeypatch.setenv("DURABLE_WORLD_DATABASE_URL", f"sqlite://{path}")
    return path


def _seed(db_path) -> tuple[str, str]:
    async def _run():
        async with World(store=SQLiteWorkflowStore(db_path)) as world:
            done = await world.start_run("ingest", {"n": 1})
            await world.execute_task(done, "fetch", lambda: "rows")
            await world.complete_run(done, "ok")
            active = await world.start_run("report", None)
            await world.execute_task(active, "render", lambda: "pdf")
            return done, active

    return asyncio.run(_run())


def test_migrate_commands(db_path):
    runner = CliRunner()

    result = runner.invoke(app, ["migrate", "up"])
    assert result.exit_code == 0, result.stdout
    assert "Applied 3 migration(s)" in result.stdout

    result = runner.invoke(app, ["migrate", "up"])
    assert "Schema is up to date (version 3)" in result.stdout

    result = runner.invoke(app, ["migrate", "down"])
    assert result.exit_code == 0
    assert "Schema version: 2" in result.stdout

    result = runner.invoke(app, ["migrate", "version"])
    assert result.stdout.strip() == "2"

    result = runner.invoke(app, ["migrate", "reset"])
    assert result.exit_code == 1

    result = runner.invoke(app, ["migrate", "reset", "--yes"])
    assert result.exit_code == 0
    result = runner.invoke(app, ["migrate", "version"])
    assert result.stdout.strip() == "0"

    result = runner.invoke(app, ["migrate", "down"])
    assert "No migrations to revert" in result.stdout


def test_runs_list_and_show(db_path):
    done, active = _seed(db_path)
    runner = CliRunner()

    result = runner.invoke(app, ["runs", "list"])
    assert result.exit_code == 0, result.stdout
    assert done in result.stdout
    assert active in result.stdout

    result = runner.invoke(app, ["runs", "list", "--workflow-id", "report"])
    assert active in result.stdout
    assert done not in result.stdout

    result = runner.invoke(app, ["runs", "show", done])
    assert result.exit_code == 0, result.stdout
    assert f"Run {done} (ingest): completed" in result.stdout
    assert "Steps: 1/1 completed" in result.stdout
    assert "- fetch: completed" in result.stdout

    missing = runner.invoke(app, ["runs", "show", "run_missing"])
    assert missing.exit_code == 1
    assert "Run not found" in missing.stdout


def test_runs_cleanup_and_due_steps(db_path):
    async def _seed_old():
        async with World(store=SQLiteWorkflowStore(db_path)) as world:
            await world.store.create_run(
                WorkflowRun(
                    id="old",
                    workflow_id="wf",
                    status="completed",
                    created_at=utcnow() - timedelta(days=45),
                )
            )
            run_id = await world.start_run("wf", None)
            await world.schedule_task(run_id, "later", lambda: None, 0)
            return run_id

    run_id = asyncio.run(_seed_old())
    runner = CliRunner()

    result = runner.invoke(app, ["steps", "due"])
    assert result.exit_code == 0, result.stdout
    assert f"{run_id}\tlater" in result.stdout

    result = runner.invoke(app, ["runs", "cleanup", "--older-than-days", "30"])
    assert result.exit_code == 0, result.stdout
    assert "Deleted 1 run(s)" in result.stdout
