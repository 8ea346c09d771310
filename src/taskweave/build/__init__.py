"""Build module for taskweave.

This module provides functions and classes for executing task graphs.

Primary build functions:
- build(): Concurrent build from a sync context
- build_aio(): Concurrent build from an async context or running event loop

Scheduler:
- Scheduler: Executes a root's closure; supports re-scoping for watch mode

Action executor:
- ActionExecutor: Awaits async actions, runs sync actions in a thread pool

Reporting:
- Reporter: Collects execution records, renders the summary and exit code

Interfaces:
- ActionExecutorABC: Abstract base class for custom action executors
"""

from taskweave.build._base import (
    ActionExecutorABC,
    BuildExitStatus,
    BuildSummary,
    ExecutionRecord,
    TaskCount,
    TaskStatus,
)
from taskweave.build._executor import ActionExecutor
from taskweave.build._report import Reporter, order_records
from taskweave.build._scheduler import (
    Scheduler,
    build,
    build_aio,
)

__all__ = [
    # Data structures
    "BuildExitStatus",
    "BuildSummary",
    "ExecutionRecord",
    "TaskCount",
    "TaskStatus",
    # Reporting
    "Reporter",
    "order_records",
    # Action executors
    "ActionExecutor",
    "ActionExecutorABC",
    # Scheduling
    "Scheduler",
    "build",
    "build_aio",
]
