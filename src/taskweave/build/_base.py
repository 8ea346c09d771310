"""Base interfaces and data structures for the build system.

This module contains:
- Data structures: BuildExitStatus, TaskStatus, ExecutionRecord, TaskCount,
  BuildSummary
- Action executor protocol: ActionExecutorABC
"""

from __future__ import annotations

import datetime
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import StrEnum

from taskweave._task import Task
from taskweave.config import RunContext
from taskweave.exceptions import ActionFailure, ExitCode

# =============================================================================
# Data Structures
# =============================================================================


class BuildExitStatus(StrEnum):
    SUCCESS = "success"
    FAILURE = "failure"


class TaskStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def settled(self) -> bool:
        return self in (TaskStatus.SUCCEEDED, TaskStatus.FAILED, TaskStatus.SKIPPED)


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


@dataclass
class ExecutionRecord:
    """Execution state of one task within one run.

    Owned and written exclusively by the scheduler driving the run.
    """

    name: str
    status: TaskStatus = TaskStatus.PENDING
    started_at: datetime.datetime | None = None
    ended_at: datetime.datetime | None = None
    error: ActionFailure | None = None
    # Dispatch sequence number, orders records started in the same instant
    start_seq: int | None = None
    skipped_because: str | None = None

    @property
    def duration(self) -> datetime.timedelta | None:
        if self.started_at is None or self.ended_at is None:
            return None
        return self.ended_at - self.started_at

    def mark_running(self, seq: int) -> None:
        self.status = TaskStatus.RUNNING
        self.started_at = utcnow()
        self.start_seq = seq

    def mark_succeeded(self) -> None:
        self.status = TaskStatus.SUCCEEDED
        self.ended_at = utcnow()

    def mark_failed(self, error: ActionFailure) -> None:
        self.status = TaskStatus.FAILED
        self.ended_at = utcnow()
        self.error = error

    def mark_skipped(self, because: str) -> None:
        self.status = TaskStatus.SKIPPED
        self.skipped_because = because


@dataclass
class TaskCount:
    scheduled: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0

    @property
    def pending(self) -> int:
        return self.scheduled - self.succeeded - self.failed - self.skipped

    @classmethod
    def from_records(cls, records: list[ExecutionRecord]) -> TaskCount:
        count = cls(scheduled=len(records))
        for record in records:
            if record.status == TaskStatus.SUCCEEDED:
                count.succeeded += 1
            elif record.status == TaskStatus.FAILED:
                count.failed += 1
            elif record.status == TaskStatus.SKIPPED:
                count.skipped += 1
        return count


@dataclass
class BuildSummary:
    """Summary of a build execution.

    Attributes:
        root: The requested root task.
        status: SUCCESS if no task failed.
        records: Execution records ordered by start time (never started
            tasks last, in registration order).
        error: The first action failure, if any.
    """

    root: str
    status: BuildExitStatus
    records: list[ExecutionRecord] = field(default_factory=list)
    error: BaseException | None = None

    @property
    def task_count(self) -> TaskCount:
        return TaskCount.from_records(self.records)

    @property
    def exit_code(self) -> int:
        if self.status == BuildExitStatus.SUCCESS:
            return ExitCode.SUCCESS
        return ExitCode.TASK_FAILED

    @property
    def executed(self) -> list[str]:
        """Names of tasks that were actually invoked, in start order."""
        return [r.name for r in self.records if r.started_at is not None]

    def statuses(self) -> dict[str, TaskStatus]:
        return {r.name: r.status for r in self.records}

    def __repr__(self) -> str:
        """Return a human-readable summary of the build."""
        tc = self.task_count
        status_icon = "✓" if self.status == BuildExitStatus.SUCCESS else "✗"
        lines = [
            f"Build {self.root} {self.status.value.upper()} {status_icon}",
            f"  Scheduled: {tc.scheduled}",
            f"  Succeeded: {tc.succeeded}",
            f"  Failed: {tc.failed}",
            f"  Skipped: {tc.skipped}",
        ]
        if tc.pending > 0:
            lines.append(f"  Pending: {tc.pending}")
        if self.error:
            lines.append(f"  Error: {self.error}")
        return "\n".join(lines)


# =============================================================================
# Action Executor Protocol
# =============================================================================


class ActionExecutorABC(ABC):
    """Abstract base for action executors.

    Receives tasks and invokes their actions. The executor is responsible for:
    - Invoking the action in the appropriate context (event loop / thread)
    - Enforcing per-task timeouts
    - Converting any raised exception into an ActionFailure

    The executor is NOT responsible for:
    - Dependency resolution and ordering - handled by the Scheduler
    - Execution records and reporting - handled by the Scheduler
    """

    @abstractmethod
    async def submit(self, task: Task, context: RunContext) -> ActionFailure | None:
        """Invoke the task's action exactly once.

        Returns:
            - None: The action completed.
            - ActionFailure: The action failed (ActionTimeout on timeout).
        """
        ...

    @abstractmethod
    async def setup(self) -> None:
        """Setup any resources needed for execution (pools, etc.)."""
        ...

    @abstractmethod
    async def teardown(self) -> None:
        """Teardown any resources used by the executor."""
        ...
