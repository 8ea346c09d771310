"""Build reporting.

The Reporter receives execution records from the scheduler as tasks start
and settle, logs progress, and turns a finished run into a single
process-level outcome: an exit code plus a deterministic summary.
"""

from __future__ import annotations

import logging
import sys
from typing import Sequence

from taskweave.build._base import (
    BuildExitStatus,
    BuildSummary,
    ExecutionRecord,
    TaskCount,
    TaskStatus,
)
from taskweave.exceptions import ExitCode

logger = logging.getLogger(__name__)

_STATUS_ICONS = {
    TaskStatus.SUCCEEDED: "✓",
    TaskStatus.FAILED: "✗",
    TaskStatus.SKIPPED: "-",
    TaskStatus.RUNNING: "…",
    TaskStatus.PENDING: " ",
}


def order_records(
    records: Sequence[ExecutionRecord], registration_order: Sequence[str] = ()
) -> list[ExecutionRecord]:
    """Order records by start time; never-started records last.

    Never-started records keep registration order (or name order for names
    missing from `registration_order`).
    """
    index = {name: i for i, name in enumerate(registration_order)}

    def key(record: ExecutionRecord):
        if record.start_seq is not None:
            return (0, record.start_seq, 0, "")
        return (1, 0, index.get(record.name, len(index)), record.name)

    return sorted(records, key=key)


class Reporter:
    """Accumulates execution records of one run at a time.

    The scheduler calls `build_start`, `task_start`, `task_settle` and
    `build_complete`. Records are kept by name; starting a new build clears
    them.
    """

    def __init__(self) -> None:
        self.root: str | None = None
        self._records: dict[str, ExecutionRecord] = {}
        self._registration_order: list[str] = []
        self._summary: BuildSummary | None = None

    # -------------------------------------------------------------------------
    # Scheduler callbacks
    # -------------------------------------------------------------------------

    def build_start(self, root: str, scheduled: Sequence[str]) -> None:
        self.root = root
        self._records = {}
        self._registration_order = list(scheduled)
        self._summary = None
        logger.info(f"Building '{root}' ({len(scheduled)} tasks)")

    def record(self, record: ExecutionRecord) -> None:
        """Add or replace the record for a task."""
        self._records[record.name] = record

    def discard(self, name: str) -> None:
        """Forget a task that was removed from the run before it started."""
        self._records.pop(name, None)

    def task_start(self, record: ExecutionRecord) -> None:
        self.record(record)
        logger.info(f"Starting '{record.name}'")

    def task_settle(self, record: ExecutionRecord) -> None:
        self.record(record)
        if record.status == TaskStatus.SUCCEEDED:
            duration = record.duration
            seconds = duration.total_seconds() if duration is not None else 0.0
            logger.info(f"Finished '{record.name}' after {seconds:.2f}s")
        elif record.status == TaskStatus.FAILED:
            reason = record.error.reason if record.error else "unknown error"
            logger.error(f"'{record.name}' failed: {reason}")
        elif record.status == TaskStatus.SKIPPED:
            logger.warning(
                f"Skipping '{record.name}': dependency "
                f"'{record.skipped_because}' did not succeed"
            )

    def build_complete(self, summary: BuildSummary) -> None:
        self._summary = summary
        if summary.status == BuildExitStatus.SUCCESS:
            logger.info(f"Build '{summary.root}' succeeded")
        else:
            logger.error(f"Build '{summary.root}' failed")

    # -------------------------------------------------------------------------
    # Outcome
    # -------------------------------------------------------------------------

    def records(self) -> list[ExecutionRecord]:
        """Accumulated records ordered by task start time."""
        return order_records(list(self._records.values()), self._registration_order)

    @property
    def task_count(self) -> TaskCount:
        return TaskCount.from_records(self.records())

    def exit_code(self) -> int:
        """0 when every recorded task succeeded, nonzero otherwise."""
        records = self.records()
        if all(r.status == TaskStatus.SUCCEEDED for r in records):
            return ExitCode.SUCCESS
        return ExitCode.TASK_FAILED

    def summary(self) -> str:
        """Deterministic, human-readable summary ordered by start time."""
        records = self.records()
        tc = TaskCount.from_records(records)
        ok = self.exit_code() == ExitCode.SUCCESS
        header = f"Build '{self.root}' {'SUCCEEDED' if ok else 'FAILED'}"
        lines = [header]
        for record in records:
            icon = _STATUS_ICONS[record.status]
            line = f"  {icon} {record.name:<24} {record.status.value}"
            duration = record.duration
            if duration is not None:
                line += f" ({duration.total_seconds():.2f}s)"
            if record.status == TaskStatus.FAILED and record.error is not None:
                line += f": {record.error.reason}"
            elif record.status == TaskStatus.SKIPPED and record.skipped_because:
                line += f" (after '{record.skipped_because}')"
            lines.append(line)
        lines.append(
            f"{tc.succeeded} succeeded, {tc.failed} failed, {tc.skipped} skipped"
        )
        return "\n".join(lines)

    def flush(self) -> None:
        """Flush buffered diagnostics (log handlers and stdio)."""
        loggers = [logging.getLogger()] + [
            log
            for log in list(logging.root.manager.loggerDict.values())
            if isinstance(log, logging.Logger)
        ]
        seen: set[int] = set()
        for log in loggers:
            for handler in log.handlers:
                if id(handler) not in seen:
                    seen.add(id(handler))
                    handler.flush()
        for stream in (sys.stdout, sys.stderr):
            stream.flush()
