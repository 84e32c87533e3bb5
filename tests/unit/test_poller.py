import json
from datetime import timedelta

import pytest

from durable_world import ScheduledStepPoller, World
from durable_world.persistence import SQLiteWorkflowStore
from durable_world.persistence.models import WorkflowStep, utcnow
from durable_world.poller import resolve_from_descriptor

DELIVERIES = []


async def deliver_digest():
    DELIVERIES.append("digest")
    return {"delivered": True}


@pytest.fixture(autouse=True)
def _reset_deliveries():
    DELIVERIES.clear()


def test_resolve_from_descriptor_imports_callable():
    step = WorkflowStep(
        run_id="r",
        step_id="s",
        status="scheduled",
        task_data=json.dumps({"type": "delayed_task", "callable": f"{__name__}:deliver_digest"}),
    )
    assert resolve_from_descriptor(step) is deliver_digest


def test_resolve_from_descriptor_handles_missing_reference():
    bare = WorkflowStep(run_id="r", step_id="s", task_data='{"type": "delayed_task"}')
    broken = WorkflowStep(run_id="r", step_id="s", task_data="not json")
    unknown = WorkflowStep(
        run_id="r",
        step_id="s",
        task_data=json.dumps({"callable": "no_such_module_here:thing"}),
    )
    assert resolve_from_descriptor(bare) is None
    assert resolve_from_descriptor(broken) is None
    assert resolve_from_descriptor(unknown) is None
    assert resolve_from_descriptor(WorkflowStep(run_id="r", step_id="s")) is None


@pytest.mark.asyncio
async def test_poll_once_executes_due_steps(tmp_path):
    world = World(store=SQLiteWorkflowStore(tmp_path / "wf.db"))
    poller = ScheduledStepPoller(world)
    run_id = await world.start_run("wf", None)

    await world.schedule_task(run_id, "digest", deliver_digest, 500)
    assert await poller.poll_once() == []
    assert DELIVERIES == []

    results = await poller.poll_once(utcnow() + timedelta(seconds=1))
    assert [r.value for r in results] == [{"delivered": True}]
    assert DELIVERIES == ["digest"]

    step = await world.store.get_step(run_id, "digest")
    assert step.status == "completed"
    assert await poller.poll_once(utcnow() + timedelta(seconds=1)) == []
    await world.close()


@pytest.mark.asyncio
async def test_poll_once_skips_unresolved_steps(tmp_path):
    world = World(store=SQLiteWorkflowStore(tmp_path / "wf.db"))
    poller = ScheduledStepPoller(world, resolve_task=lambda step: None)
    run_id = await world.start_run("wf", None)
    await world.schedule_task(run_id, "digest", deliver_digest, 0)

    assert await poller.poll_once(utcnow() + timedelta(seconds=1)) == []
    step = await world.store.get_step(run_id, "digest")
    assert step.status == "scheduled"
    await world.close()


@pytest.mark.asyncio
async def test_run_drains_until_lifespan(tmp_path):
    world = World(store=SQLiteWorkflowStore(tmp_path / "wf.db"))
    poller = ScheduledStepPoller(
        world, resolve_task=lambda step: deliver_digest, interval=0.05
    )
    run_id = await world.start_run("wf", None)
    await world.schedule_task(run_id, "digest", deliver_digest, 0)

    await poller.run(lifespan=0.2)

    assert DELIVERIES == ["digest"]
    status = await world.get_run_status(run_id)
    assert status.completed_steps == 1
    await world.close()


@pytest.mark.asyncio
async def test_poll_once_continues_past_unpersistable_result(tmp_path):
    world = World(store=SQLiteWorkflowStore(tmp_path / "wf.db"))
    tasks = {"broken": lambda: object(), "digest": deliver_digest}
    poller = ScheduledStepPoller(world, resolve_task=lambda step: tasks[step.step_id])
    run_id = await world.start_run("wf", None)
    await world.schedule_task(run_id, "broken", deliver_digest, 0)
    await world.schedule_task(run_id, "digest", deliver_digest, 10)

    results = await poller.poll_once(utcnow() + timedelta(seconds=1))

    assert [r.success for r in results] == [False, True]
    assert DELIVERIES == ["digest"]
    broken = await world.store.get_step(run_id, "broken")
    assert broken.status == "failed"
    await world.close()
