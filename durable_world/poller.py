"""Polling loop that re-drives scheduled steps once they are due."""

from __future__ import annotations

import asyncio
import importlib
import json
import logging
from datetime import datetime
from typing import Any, Callable, Optional

from .persistence.models import WorkflowStep
from .world import Task, TaskResult, World

logger = logging.getLogger(__name__)

TaskResolver = Callable[[WorkflowStep], Optional[Task[Any]]]


def resolve_from_descriptor(step: WorkflowStep) -> Optional[Task[Any]]:
    """Import the callable named by a step's ``task_data`` descriptor.

    Returns ``None`` when the descriptor carries no ``module:qualname``
    reference or it cannot be imported.
    """
    if not step.task_data:
        return None
    try:
        descriptor = json.loads(step.task_data)
    except json.JSONDecodeError:
        return None
    reference = descriptor.get("callable") if isinstance(descriptor, dict) else None
    if not reference or ":" not in reference:
        return None

    module_name, qualname = reference.split(":", 1)
    try:
        target: Any = importlib.import_module(module_name)
        for attr in qualname.split("."):
            target = getattr(target, attr)
    except (ImportError, AttributeError) as e:
        logger.warning(f"Cannot resolve task {reference}: {e}")
        return None
    return target if callable(target) else None


class ScheduledStepPoller:
    """Drain due scheduled steps and execute them through the world.

    The engine itself never starts timers; this poller is what turns a
    ``scheduled`` step into a ``running`` one. ``resolve_task`` maps a step
    (by default via its ``task_data`` descriptor) back to a callable.
    """

    def __init__(
        self,
        world: World,
        resolve_task: TaskResolver = resolve_from_descriptor,
        interval: float = 1.0,
    ) -> None:
        self._world = world
        self._resolve_task = resolve_task
        self._interval = interval
        self._stopped = asyncio.Event()

    async def poll_once(self, now: Optional[datetime] = None) -> list[TaskResult[Any]]:
        """Execute every step due at ``now`` and return their results."""
        results: list[TaskResult[Any]] = []
        for step in await self._world.get_scheduled_steps(now):
            task = self._resolve_task(step)
            if task is None:
                logger.warning(
                    f"No task resolved for scheduled step {step.step_id} of run {step.run_id}"
                )
                continue
            results.append(
                await self._world.execute_task(step.run_id, step.step_id, task)
            )
        return results

    async def run(self, lifespan: Optional[float] = None) -> None:
        """Poll every ``interval`` seconds until stopped or ``lifespan`` elapses.

        Args:
            lifespan: Maximum time in seconds to keep polling. If None, runs
                until :meth:`stop` is called.
        """
        loop = asyncio.get_running_loop()
        start_time = loop.time()
        self._stopped.clear()

        while not self._stopped.is_set():
            if lifespan is not None and loop.time() - start_time >= lifespan:
                break
            await self.poll_once()
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                pass

    def stop(self) -> None:
        self._stopped.set()
