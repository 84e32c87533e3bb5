"""Command line interface for operating a durable world store."""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Optional, TypeVar

import typer

from durable_world.config import load_config
from durable_world.migrations import MigrationRunner
from durable_world.persistence import WorkflowStore, get_store
from durable_world.world import World

T = TypeVar("T")

app = typer.Typer(help="CLI for durable workflow runs")

# Command groups
migrate_app = typer.Typer(help="Commands for managing the database schema")
runs_app = typer.Typer(help="Commands for inspecting workflow runs")
steps_app = typer.Typer(help="Commands for inspecting workflow steps")

app.add_typer(migrate_app, name="migrate")
app.add_typer(runs_app, name="runs")
app.add_typer(steps_app, name="steps")


@app.callback()
def main() -> None:
    """Durable world CLI entry point."""
    pass


def _build_store() -> WorkflowStore:
    return get_store(config=load_config())


def _with_migrations(action: Callable[[MigrationRunner], Awaitable[T]]) -> T:
    async def _run() -> T:
        store = _build_store()
        await store.connect()
        try:
            runner = MigrationRunner(store.migration_executor(), store.migrations)
            return await action(runner)
        finally:
            await store.close()

    return asyncio.run(_run())


def _with_world(action: Callable[[World], Awaitable[T]]) -> T:
    async def _run() -> T:
        async with World(store=_build_store()) as world:
            return await action(world)

    return asyncio.run(_run())


@migrate_app.command("up")
def migrate_up() -> None:
    """
    Apply all pending schema migrations.

    Example:
        durable-world migrate up
        # Output: Applied 3 migration(s). Schema version: 3
    """
    async def _up(runner: MigrationRunner) -> tuple[int, int]:
        applied = await runner.run()
        return applied, await runner.get_version()

    applied, version = _with_migrations(_up)
    if applied == 0:
        typer.echo(f"Schema is up to date (version {version})")
    else:
        typer.echo(f"Applied {applied} migration(s). Schema version: {version}")


@migrate_app.command("down")
def migrate_down() -> None:
    """Revert the most recently applied migration."""

    async def _down(runner: MigrationRunner) -> tuple[bool, int]:
        reverted = await runner.rollback()
        return reverted, await runner.get_version()

    reverted, version = _with_migrations(_down)
    if not reverted:
        typer.echo("No migrations to revert")
        return
    typer.echo(f"Reverted one migration. Schema version: {version}")


@migrate_app.command("version")
def migrate_version() -> None:
    """Print the current schema version (0 when nothing is applied)."""
    version = _with_migrations(lambda runner: runner.get_version())
    typer.echo(str(version))


@migrate_app.command("reset")
def migrate_reset(
    yes: bool = typer.Option(False, "--yes", help="Confirm dropping all workflow data"),
) -> None:
    """Revert every migration, dropping all workflow tables and data."""
    if not yes:
        typer.secho("Refusing to reset without --yes", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    _with_migrations(lambda runner: runner.reset())
    typer.echo("All migrations reverted")


@runs_app.command("list")
def runs_list(
    workflow_id: Optional[str] = typer.Option(None, help="Only list runs of this workflow"),
    limit: int = typer.Option(100, help="Maximum number of runs to show"),
) -> None:
    """
    List workflow runs, most recent first.

    Example:
        durable-world runs list --workflow-id ingest
        # Output: run_lx2k1c_3f9a0b2c    ingest    running    2026-01-01 10:00:00+00:00
    """
    runs = _with_world(lambda world: world.list_runs(workflow_id, limit))
    if not runs:
        typer.echo("No runs found")
        return
    for run in runs:
        typer.echo(f"{run.id}\t{run.workflow_id}\t{run.status}\t{run.created_at}")


@runs_app.command("show")
def runs_show(run_id: str) -> None:
    """
    Show a run with its step-by-step execution history.

    Example:
        durable-world runs show run_lx2k1c_3f9a0b2c
        # Output: Run run_lx2k1c_3f9a0b2c (ingest): running
        #         Steps: 1/2 completed
        #         - fetch: completed (2026-01-01 10:00 -> 10:01)
        #         - store: running
    """

    async def _show(world: World) -> Any:
        run = await world.get_run(run_id)
        if run is None:
            return None
        return run, await world.get_steps(run_id)

    found = _with_world(_show)
    if found is None:
        typer.echo("Run not found")
        raise typer.Exit(code=1)

    run, steps = found
    completed = sum(1 for s in steps if s.status == "completed")
    typer.echo(f"Run {run.id} ({run.workflow_id}): {run.status}")
    typer.echo(f"Steps: {completed}/{len(steps)} completed")
    if run.error:
        typer.echo(f"Error: {run.error.message}")
    for step in steps:
        typer.echo(
            f"- {step.step_id}: {step.status}"
            + (
                f" ({step.started_at} -> {step.completed_at})"
                if step.started_at or step.completed_at
                else ""
            )
        )


@runs_app.command("cleanup")
def runs_cleanup(
    older_than_days: float = typer.Option(30, help="Age threshold in days"),
) -> None:
    """Delete completed and failed runs older than the threshold."""
    deleted = _with_world(lambda world: world.cleanup(older_than_days))
    typer.echo(f"Deleted {deleted} run(s)")


@steps_app.command("due")
def steps_due() -> None:
    """List scheduled steps that are due for execution now."""
    steps = _with_world(lambda world: world.get_scheduled_steps())
    if not steps:
        typer.echo("No scheduled steps due")
        return
    for step in steps:
        typer.echo(f"{step.run_id}\t{step.step_id}\t{step.scheduled_for}")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
