"""Task definitions.

A Task is a named unit of work with declared dependencies and an optional
Action. Tasks are plain immutable values; the TaskRegistry owns them and the
DependencyGraph derives edges from them.
"""

from __future__ import annotations

import inspect
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Iterable, Protocol, Union

from taskweave.exceptions import CycleError

if TYPE_CHECKING:
    from taskweave.config import RunContext


class ExecutionMode(StrEnum):
    """How a task is ordered relative to tasks it has no dependency on.

    Attributes:
        ASYNC: Runs as soon as its dependencies succeeded, concurrently with
            any other ready task.
        SYNC_GROUP: Member of a sync group; additionally waits for the
            previous member of its group. The group itself comes from
            TaskRegistry.sequence() or RunContext.sync_groups; a SYNC_GROUP
            task in no group is rejected when the graph is built.
    """

    ASYNC = "async"
    SYNC_GROUP = "sync-group"


class Action(Protocol):
    """Opaque unit of work bound to a task.

    Invoked once per run with the RunContext. Returning means the action
    completed, raising means it failed. Sync implementations are executed in
    a worker thread by the executor.
    """

    def __call__(self, context: RunContext) -> Awaitable[None] | None: ...


ActionLike = Union[Action, Callable[["RunContext"], Any]]


def is_async_action(action: Any) -> bool:
    """Check whether invoking the action returns an awaitable.

    Works for coroutine functions as well as instances whose __call__ is a
    coroutine function.
    """
    if inspect.iscoroutinefunction(action):
        return True
    call = getattr(action, "__call__", None)
    return call is not None and inspect.iscoroutinefunction(call)


@dataclass(frozen=True)
class Task:
    """A named build step.

    Attributes:
        name: Unique task name.
        dependencies: Names of tasks that must succeed before this one runs.
        action: What to execute. None for aggregate tasks that only group
            their dependencies.
        mode: ASYNC or SYNC_GROUP.
        sources: Glob patterns (relative to the base directory) of files the
            task reads. Watch mode reruns the task when they change.
        description: One line shown by `taskweave list`.
        timeout: Seconds after which the action settles as timed out.
    """

    name: str
    dependencies: tuple[str, ...] = ()
    action: ActionLike | None = field(default=None, compare=False)
    mode: ExecutionMode = ExecutionMode.ASYNC
    sources: tuple[str, ...] = ()
    description: str = ""
    timeout: float | None = None

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("Task name must not be empty")
        # Normalize iterables to tuples, keeping declaration order, dropping dupes
        object.__setattr__(
            self, "dependencies", tuple(dict.fromkeys(self.dependencies))
        )
        object.__setattr__(self, "sources", tuple(self.sources))
        object.__setattr__(self, "mode", ExecutionMode(self.mode))
        if self.name in self.dependencies:
            raise CycleError([self.name, self.name])
        if self.timeout is not None and self.timeout <= 0:
            raise ValueError(f"Task '{self.name}': timeout must be positive")

    @property
    def is_aggregate(self) -> bool:
        return self.action is None


def task_names(tasks: Iterable[Task | str]) -> list[str]:
    return [t if isinstance(t, str) else t.name for t in tasks]
