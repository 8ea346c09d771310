"""Task registry.

The TaskRegistry stores task definitions keyed by name, in registration
order. It is mutable during setup (typically while a taskfile runs) and frozen
by the scheduler once a run begins.

Example:
    registry = TaskRegistry()

    @registry.task("compile", sources=["src/**/*.py"])
    def compile_(context):
        ...

    registry.register(Task("package", dependencies=("compile",), action=zip_dist))
    registry.sequence("dist", ["clean", "compile", "package"])
"""

from __future__ import annotations

import dataclasses
import logging
from typing import Callable, Iterable, Iterator, Sequence, TypeVar

from taskweave._task import ActionLike, ExecutionMode, Task, task_names
from taskweave.exceptions import (
    DuplicateTaskError,
    RegistryFrozenError,
    UnknownTaskError,
)

logger = logging.getLogger(__name__)

ActionT = TypeVar("ActionT", bound=ActionLike)


class TaskRegistry:
    """Ordered, name-keyed store of task definitions."""

    def __init__(self, tasks: Iterable[Task] = ()) -> None:
        self._tasks: dict[str, Task] = {}
        self._sync_groups: list[tuple[str, ...]] = []
        self._frozen = False
        for task in tasks:
            self.register(task)

    # -------------------------------------------------------------------------
    # Mutation (setup time only)
    # -------------------------------------------------------------------------

    def register(self, task: Task) -> Task:
        """Register a task.

        Raises:
            DuplicateTaskError: If a task with the same name exists.
            RegistryFrozenError: If a run already started.
        """
        if self._frozen:
            raise RegistryFrozenError(task.name)
        if task.name in self._tasks:
            raise DuplicateTaskError(task.name)
        self._tasks[task.name] = task
        logger.debug(f"Registered task '{task.name}' deps={list(task.dependencies)}")
        return task

    def task(
        self,
        name: str,
        dependencies: Sequence[str] = (),
        *,
        sources: Sequence[str] = (),
        mode: ExecutionMode = ExecutionMode.ASYNC,
        description: str = "",
        timeout: float | None = None,
    ) -> Callable[[ActionT], ActionT]:
        """Decorator registering the decorated callable as the task's action.

        The callable receives the RunContext and may be sync or async.
        """

        def decorator(action: ActionT) -> ActionT:
            self.register(
                Task(
                    name=name,
                    dependencies=tuple(dependencies),
                    action=action,
                    mode=mode,
                    sources=tuple(sources),
                    description=description or _first_doc_line(action),
                    timeout=timeout,
                )
            )
            return action

        return decorator

    def sequence(
        self, name: str, steps: Sequence[str | Task], *, description: str = ""
    ) -> Task:
        """Register an aggregate task whose steps run strictly one after another.

        The steps need no dependency on each other; they form a sync group so
        that each step starts only after the previous one settled. Steps given
        as Task objects are registered first. Steps already registered as
        ASYNC are switched to SYNC_GROUP.
        """
        if self._frozen:
            raise RegistryFrozenError(name)
        if name in self._tasks:
            raise DuplicateTaskError(name)
        for step in steps:
            if isinstance(step, Task):
                self.register(step)
        names = task_names(steps)
        for step_name in names:
            existing = self._tasks.get(step_name)
            if existing is not None and existing.mode != ExecutionMode.SYNC_GROUP:
                self._tasks[step_name] = dataclasses.replace(
                    existing, mode=ExecutionMode.SYNC_GROUP
                )
        self._sync_groups.append(tuple(names))
        return self.register(
            Task(
                name=name,
                dependencies=tuple(names),
                description=description or f"Run {', '.join(names)} in order",
            )
        )

    def freeze(self) -> None:
        """Make the registry read-only. Idempotent."""
        self._frozen = True

    # -------------------------------------------------------------------------
    # Lookup
    # -------------------------------------------------------------------------

    @property
    def frozen(self) -> bool:
        return self._frozen

    @property
    def sync_groups(self) -> tuple[tuple[str, ...], ...]:
        return tuple(self._sync_groups)

    def get(self, name: str) -> Task:
        """Get a task by name.

        Raises:
            UnknownTaskError: If no task with that name is registered.
        """
        try:
            return self._tasks[name]
        except KeyError:
            raise UnknownTaskError(name) from None

    def list_all(self) -> list[Task]:
        """All tasks in registration order."""
        return list(self._tasks.values())

    def names(self) -> list[str]:
        return list(self._tasks)

    def index_of(self, name: str) -> int:
        """Registration index of a task, used to break ordering ties."""
        for index, task_name in enumerate(self._tasks):
            if task_name == name:
                return index
        raise UnknownTaskError(name)

    def __contains__(self, name: object) -> bool:
        return name in self._tasks

    def __len__(self) -> int:
        return len(self._tasks)

    def __iter__(self) -> Iterator[Task]:
        return iter(self.list_all())

    def __repr__(self) -> str:
        state = "frozen" if self._frozen else "open"
        return f"TaskRegistry({len(self)} tasks, {state})"


def _first_doc_line(obj: object) -> str:
    doc = getattr(obj, "__doc__", None) or ""
    for line in doc.strip().splitlines():
        if line.strip():
            return line.strip()
    return ""
