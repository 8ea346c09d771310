"""Taskweave exceptions.

This module provides the exception hierarchy shared by the registry, the
dependency graph, the scheduler and the CLI, with clear error messages that
can be propagated to CLI output.

Structural errors (DuplicateTaskError, UnknownTaskError, CycleError) are raised
before any action runs and each maps to its own process exit code. Runtime
errors (ActionFailure, ActionTimeout) are scoped to a single task and never
abort a build on their own.
"""

from __future__ import annotations

from enum import IntEnum
from typing import Sequence


class ExitCode(IntEnum):
    """Process exit codes used by the CLI.

    Attributes:
        SUCCESS: Every task in the requested closure succeeded.
        TASK_FAILED: At least one task failed (dependents were skipped).
        USAGE: Invalid command line usage (reserved by typer/click).
        DUPLICATE_TASK: A task name was registered twice.
        UNKNOWN_TASK: The root or a dependency names an unregistered task.
        CYCLE: The dependency/ordering relation contains a cycle.
        CONFIG: Configuration or taskfile could not be loaded, or a task
            declaration is inconsistent (e.g. a sync-group task in no group).
    """

    SUCCESS = 0
    TASK_FAILED = 1
    USAGE = 2
    DUPLICATE_TASK = 3
    UNKNOWN_TASK = 4
    CYCLE = 5
    CONFIG = 6


class TaskweaveError(Exception):
    """Base exception for all taskweave errors."""

    exit_code: ExitCode = ExitCode.TASK_FAILED


# =============================================================================
# Structural errors
# =============================================================================


class StructuralError(TaskweaveError):
    """Invalid task definitions, detected before any action executes."""


class DuplicateTaskError(StructuralError):
    """A task with the same name is already registered."""

    exit_code = ExitCode.DUPLICATE_TASK

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Task '{name}' is already registered")


class UnknownTaskError(StructuralError):
    """A task name does not resolve to a registered task.

    Attributes:
        name: The unknown task name.
        referenced_by: The task that declared the dependency, or None when
            the unknown name was requested directly (e.g. as build root).
    """

    exit_code = ExitCode.UNKNOWN_TASK

    def __init__(self, name: str, referenced_by: str | None = None):
        self.name = name
        self.referenced_by = referenced_by
        if referenced_by:
            msg = f"Task '{referenced_by}' depends on unknown task '{name}'"
        else:
            msg = f"Unknown task '{name}'"
        super().__init__(msg)


class CycleError(StructuralError):
    """The dependency relation (including sync-group ordering) has a cycle.

    Attributes:
        path: The offending path, first and last element being the same task.
    """

    exit_code = ExitCode.CYCLE

    def __init__(self, path: Sequence[str]):
        self.path = list(path)
        super().__init__(f"Dependency cycle detected: {' -> '.join(self.path)}")


class SyncGroupError(StructuralError):
    """A task declared as SYNC_GROUP is not a member of any sync group."""

    exit_code = ExitCode.CONFIG

    def __init__(self, name: str):
        self.name = name
        super().__init__(
            f"Task '{name}' is declared as sync-group but belongs to no sync group"
        )


class RegistryFrozenError(TaskweaveError):
    """The registry was mutated after a run started."""

    exit_code = ExitCode.CONFIG

    def __init__(self, name: str):
        self.name = name
        super().__init__(
            f"Cannot register task '{name}': registry is frozen once a run begins"
        )


class ConfigError(TaskweaveError):
    """Configuration could not be resolved."""

    exit_code = ExitCode.CONFIG


class TaskfileError(ConfigError):
    """The taskfile could not be imported or does not define any tasks."""


# =============================================================================
# Runtime errors
# =============================================================================


class ActionFailure(TaskweaveError):
    """An action settled as failed.

    Attributes:
        task_name: Name of the task whose action failed.
        reason: Human readable failure reason.
    """

    def __init__(self, task_name: str, reason: str):
        self.task_name = task_name
        self.reason = reason
        super().__init__(f"Task '{task_name}' failed: {reason}")


class ActionTimeout(ActionFailure):
    """An action did not settle within its timeout."""

    def __init__(self, task_name: str, timeout: float):
        self.timeout = timeout
        super().__init__(task_name, f"timed out after {timeout:g}s")


class CommandError(TaskweaveError):
    """An external command exited with a non-zero status.

    Attributes:
        command: The command line, for display.
        returncode: The process exit status.
    """

    def __init__(self, command: str, returncode: int):
        self.command = command
        self.returncode = returncode
        super().__init__(f"Command '{command}' exited with status {returncode}")
