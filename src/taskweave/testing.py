"""Helpers for testing task definitions and the scheduler.

- temp_env_vars: temporarily set or unset environment variables
- ActionLog / RecordingAction: async actions that record when they start and
  finish, optionally waiting on a gate, sleeping or failing
- recording_registry: a registry of recording tasks from a dependency map
- wait_until: poll a condition from async tests
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Mapping
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Sequence

from taskweave._task import Task
from taskweave.config import RunContext
from taskweave.registry import TaskRegistry


@contextmanager
def temp_env_vars(name_value: Mapping[str, str | None]) -> Iterator[None]:
    """Temporarily set or unset environment variables within a context.

    Args:
        name_value: Mapping of env var name to value. Use None to temporarily
            unset a variable.
    """
    original = {name: os.getenv(name, None) for name in name_value}
    for name, value in name_value.items():
        if value is None:
            os.environ.pop(name, None)
        else:
            os.environ[name] = value
    try:
        yield
    finally:
        for name in name_value:
            if original[name] is None:
                os.environ.pop(name, None)
            else:
                os.environ[name] = original[name]  # type: ignore


class ActionLog:
    """Shared record of action start/end events, in the order they happened."""

    def __init__(self) -> None:
        self.events: list[tuple[str, str]] = []
        self.active = 0
        self.max_active = 0
        self.contexts: list[RunContext] = []

    def action(
        self,
        name: str,
        *,
        delay: float = 0.0,
        fail: str | None = None,
        gate: asyncio.Event | None = None,
    ) -> RecordingAction:
        return RecordingAction(self, name, delay=delay, fail=fail, gate=gate)

    def started(self) -> list[str]:
        return [name for event, name in self.events if event == "start"]

    def finished(self) -> list[str]:
        return [name for event, name in self.events if event == "end"]

    def count(self, name: str) -> int:
        """Number of times the action of `name` was invoked."""
        return self.started().count(name)

    def position(self, event: str, name: str) -> int:
        """Index of the first `event` ("start" or "end") of `name`."""
        return self.events.index((event, name))

    def clear(self) -> None:
        self.events.clear()
        self.contexts.clear()
        self.active = 0
        self.max_active = 0


class RecordingAction:
    """Async action writing its start and end into an ActionLog."""

    def __init__(
        self,
        log: ActionLog,
        name: str,
        *,
        delay: float = 0.0,
        fail: str | None = None,
        gate: asyncio.Event | None = None,
    ) -> None:
        self.log = log
        self.name = name
        self.delay = delay
        self.fail = fail
        self.gate = gate

    async def __call__(self, context: RunContext) -> None:
        log = self.log
        log.events.append(("start", self.name))
        log.contexts.append(context)
        log.active += 1
        log.max_active = max(log.max_active, log.active)
        try:
            if self.gate is not None:
                await self.gate.wait()
            await asyncio.sleep(self.delay)
        finally:
            log.active -= 1
        log.events.append(("end", self.name))
        if self.fail is not None:
            raise RuntimeError(self.fail)

    def __repr__(self) -> str:
        return f"RecordingAction({self.name!r})"


def recording_registry(
    log: ActionLog,
    deps: Mapping[str, Sequence[str]],
    actions: Mapping[str, Mapping[str, Any]] | None = None,
) -> TaskRegistry:
    """Build a registry of recording tasks.

    Args:
        log: Log the actions write to.
        deps: Task name -> dependency names, in registration order.
        actions: Task name -> keyword arguments for `log.action`.
    """
    actions = actions or {}
    registry = TaskRegistry()
    for name, dependencies in deps.items():
        registry.register(
            Task(
                name,
                dependencies=tuple(dependencies),
                action=log.action(name, **actions.get(name, {})),
            )
        )
    return registry


async def wait_until(
    predicate: Callable[[], bool], timeout: float = 2.0, interval: float = 0.005
) -> None:
    """Poll `predicate` on the running loop until it returns True.

    Raises:
        TimeoutError: If the predicate is still False after `timeout` seconds.
    """
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(interval)
