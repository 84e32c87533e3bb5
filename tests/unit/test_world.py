import json
import re
from datetime import timedelta

import pytest

from durable_world import RunNotFoundError, World, WorldClosedError
from durable_world.persistence import SQLiteWorkflowStore
from durable_world.persistence.models import WorkflowRun, WorkflowStep, utcnow
from durable_world.world import describe_task, generate_run_id


def _world(tmp_path) -> World:
    return World(store=SQLiteWorkflowStore(tmp_path / "wf.db"))


async def send_report():
    return "sent"


def test_generate_run_id_format():
    run_id = generate_run_id()
    assert re.fullmatch(r"run_[0-9a-z]+_[0-9a-z]{8}", run_id)
    assert generate_run_id() != run_id


def test_describe_task_records_import_location():
    descriptor = json.loads(describe_task(send_report))
    assert descriptor == {"type": "delayed_task", "callable": f"{__name__}:send_report"}

    lambda_descriptor = json.loads(describe_task(lambda: 1))
    assert lambda_descriptor == {"type": "delayed_task"}


class Mailer:
    def send(self):
        return "sent"


def test_describe_task_skips_bound_methods():
    descriptor = json.loads(describe_task(Mailer().send))
    assert descriptor == {"type": "delayed_task"}


@pytest.mark.asyncio
async def test_end_to_end_memoized_step(tmp_path):
    world = _world(tmp_path)
    second_calls = []

    async def second_task():
        second_calls.append(1)
        return 99

    run_id = await world.start_run("wf1", {"x": 1})
    first = await world.execute_task(run_id, "s1", lambda: _value(42))
    second = await world.execute_task(run_id, "s1", second_task)

    assert (first.success, first.value, first.cached) == (True, 42, False)
    assert (second.success, second.value, second.cached) == (True, 42, True)
    assert second_calls == []
    await world.close()


async def _value(value):
    return value


@pytest.mark.asyncio
async def test_execute_task_invokes_task_once(tmp_path):
    world = _world(tmp_path)
    calls = []

    def task():
        calls.append(1)
        return {"rows": [1, 2, 3]}

    run_id = await world.start_run("wf", None)
    first = await world.execute_task(run_id, "load", task)
    second = await world.execute_task(run_id, "load", task)

    assert first.value == second.value == {"rows": [1, 2, 3]}
    assert [first.cached, second.cached] == [False, True]
    assert len(calls) == 1

    step = (await world.get_steps(run_id))[0]
    assert step.status == "completed"
    assert step.started_at is not None
    assert step.completed_at is not None
    await world.close()


@pytest.mark.asyncio
async def test_execute_task_memoizes_falsy_results(tmp_path):
    world = _world(tmp_path)
    run_id = await world.start_run("wf", None)

    await world.execute_task(run_id, "zero", lambda: 0)
    cached = await world.execute_task(run_id, "zero", lambda: 5)

    assert cached.cached is True
    assert cached.value == 0
    await world.close()


@pytest.mark.asyncio
async def test_execute_task_captures_errors(tmp_path):
    world = _world(tmp_path)
    run_id = await world.start_run("wf", None)

    async def boom():
        raise ValueError("boom")

    result = await world.execute_task(run_id, "s1", boom)

    assert result.success is False
    assert result.cached is False
    assert isinstance(result.error, ValueError)
    step = (await world.get_steps(run_id))[0]
    assert step.status == "failed"
    assert step.error.name == "ValueError"
    assert step.error.message == "boom"
    assert "ValueError: boom" in step.error.stack
    assert step.completed_at is not None

    # A failed step is not memoized; it runs again.
    retry = await world.execute_task(run_id, "s1", lambda: "ok")
    assert (retry.success, retry.value, retry.cached) == (True, "ok", False)
    step = (await world.get_steps(run_id))[0]
    assert step.status == "completed"
    assert step.error is None
    await world.close()


@pytest.mark.asyncio
async def test_execute_task_fails_step_with_unserializable_result(tmp_path):
    world = _world(tmp_path)
    run_id = await world.start_run("wf", None)

    result = await world.execute_task(run_id, "s1", lambda: object())

    assert result.success is False
    assert isinstance(result.error, TypeError)
    step = await world.store.get_step(run_id, "s1")
    assert step.status == "failed"
    assert step.error.name == "TypeError"
    assert step.completed_at is not None
    await world.close()


@pytest.mark.asyncio
async def test_complete_and_fail_run(tmp_path):
    world = _world(tmp_path)
    done = await world.start_run("wf", {"n": 1}, metadata={"source": "test"})
    broken = await world.start_run("wf", {"n": 2})

    await world.complete_run(done, {"total": 3})
    await world.fail_run(broken, RuntimeError("gave up"))

    done_run = await world.get_run(done)
    assert done_run.status == "completed"
    assert done_run.output == {"total": 3}
    assert done_run.metadata == {"source": "test"}
    assert done_run.completed_at is not None

    broken_run = await world.get_run(broken)
    assert broken_run.status == "failed"
    assert broken_run.error.name == "RuntimeError"
    assert broken_run.error.message == "gave up"
    await world.close()


@pytest.mark.asyncio
async def test_get_run_status(tmp_path):
    world = _world(tmp_path)
    run_id = await world.start_run("wf", None)
    await world.execute_task(run_id, "a", lambda: 1)
    await world.execute_task(run_id, "b", lambda: 2)
    await world.schedule_task(run_id, "c", send_report, 60_000)

    status = await world.get_run_status(run_id)
    assert status.status == "running"
    assert status.completed_steps == 2
    assert status.total_steps == 3

    with pytest.raises(RunNotFoundError):
        await world.get_run_status("run_missing")
    await world.close()


@pytest.mark.asyncio
async def test_resume_run_reports_pending_steps(tmp_path):
    world = _world(tmp_path)
    run_id = await world.start_run("wf", None)
    await world.execute_task(run_id, "A", lambda: "a")
    # Simulate a crash while B was executing.
    await world.store.upsert_step(
        WorkflowStep(run_id=run_id, step_id="B", status="running", started_at=utcnow())
    )

    state = await world.resume_run(run_id)
    assert state.last_completed_step == "A"
    assert state.pending_steps == ["B"]

    step_b = await world.store.get_step(run_id, "B")
    assert step_b.status == "running"
    await world.close()


@pytest.mark.asyncio
async def test_resume_run_picks_latest_completion(tmp_path):
    world = _world(tmp_path)
    run_id = await world.start_run("wf", None)
    await world.execute_task(run_id, "first", lambda: 1)
    await world.execute_task(run_id, "second", lambda: 2)
    await world.schedule_task(run_id, "later", send_report, 5_000)

    state = await world.resume_run(run_id)
    assert state.last_completed_step == "second"
    assert state.pending_steps == ["later"]

    empty = await world.resume_run(await world.start_run("wf", None))
    assert empty.last_completed_step is None
    assert empty.pending_steps == []
    await world.close()


@pytest.mark.asyncio
async def test_schedule_task_due_window(tmp_path):
    world = _world(tmp_path)
    run_id = await world.start_run("wf", None)

    await world.schedule_task(run_id, "s1", send_report, 1000)
    now = utcnow()

    assert await world.get_scheduled_steps(now) == []
    due = await world.get_scheduled_steps(now + timedelta(milliseconds=1001))
    assert [s.step_id for s in due] == ["s1"]
    assert json.loads(due[0].task_data)["type"] == "delayed_task"
    await world.close()


@pytest.mark.asyncio
async def test_schedule_task_leaves_completed_step_alone(tmp_path):
    world = _world(tmp_path)
    calls = []

    def task():
        calls.append(1)
        return "done"

    run_id = await world.start_run("wf", None)
    await world.execute_task(run_id, "s1", task)
    await world.schedule_task(run_id, "s1", task, 0)

    step = await world.store.get_step(run_id, "s1")
    assert step.status == "completed"
    assert step.scheduled_for is None
    assert await world.get_scheduled_steps(utcnow() + timedelta(seconds=1)) == []

    again = await world.execute_task(run_id, "s1", task)
    assert (again.value, again.cached) == ("done", True)
    assert len(calls) == 1
    await world.close()


@pytest.mark.asyncio
async def test_cleanup_keeps_running_runs(tmp_path):
    world = _world(tmp_path)
    await world.initialize()
    old = utcnow() - timedelta(days=100)
    await world.store.create_run(WorkflowRun(id="old-running", workflow_id="wf", created_at=old))
    await world.store.create_run(
        WorkflowRun(id="old-completed", workflow_id="wf", status="completed", created_at=old)
    )
    await world.store.create_run(
        WorkflowRun(id="old-failed", workflow_id="wf", status="failed", created_at=old)
    )
    recent = await world.start_run("wf", None)
    await world.complete_run(recent, None)

    assert await world.cleanup(30) == 2
    assert await world.get_run("old-running") is not None
    assert await world.get_run(recent) is not None
    assert await world.get_run("old-completed") is None
    await world.close()


@pytest.mark.asyncio
async def test_migrations_run_lazily_once(tmp_path):
    world = _world(tmp_path)
    await world.start_run("wf", None)
    assert await world.migrations.get_version() == 3
    assert await world.migrations.run() == 0
    await world.close()


@pytest.mark.asyncio
async def test_logs_are_persisted(tmp_path):
    world = _world(tmp_path)
    run_id = await world.start_run("wf", None)
    await world.log(run_id, "starting")
    await world.log(run_id, "step failed", level="error", data={"attempt": 1}, step_id="s1")

    logs = await world.get_logs(run_id)
    assert [(entry.level, entry.message) for entry in logs] == [
        ("info", "starting"),
        ("error", "step failed"),
    ]
    assert logs[1].step_id == "s1"
    await world.close()


@pytest.mark.asyncio
async def test_closed_world_rejects_operations(tmp_path):
    async with _world(tmp_path) as world:
        run_id = await world.start_run("wf", None)

    with pytest.raises(WorldClosedError):
        await world.start_run("wf", None)
    with pytest.raises(WorldClosedError):
        await world.get_run_status(run_id)
    # Closing twice is harmless.
    await world.close()
