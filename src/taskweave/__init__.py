from importlib.metadata import PackageNotFoundError, version

from taskweave._task import Action, ExecutionMode, Task
from taskweave.build import (
    ActionExecutor,
    BuildSummary,
    ExecutionRecord,
    Reporter,
    Scheduler,
    TaskStatus,
    build,
    build_aio,
)
from taskweave.config import RunContext, load_run_context
from taskweave.exceptions import (
    ActionFailure,
    ActionTimeout,
    CommandError,
    ConfigError,
    CycleError,
    DuplicateTaskError,
    ExitCode,
    RegistryFrozenError,
    SyncGroupError,
    TaskfileError,
    TaskweaveError,
    UnknownTaskError,
)
from taskweave.graph import DependencyGraph
from taskweave.registry import TaskRegistry
from taskweave.watch import WatchController, WatchState

try:
    __version__ = version("taskweave")
except PackageNotFoundError:
    __version__ = "unknown"


__all__ = [
    "__version__",
    "Action",
    "ActionExecutor",
    "ActionFailure",
    "ActionTimeout",
    "build",
    "build_aio",
    "BuildSummary",
    "CommandError",
    "ConfigError",
    "CycleError",
    "DependencyGraph",
    "DuplicateTaskError",
    "ExecutionMode",
    "ExecutionRecord",
    "ExitCode",
    "load_run_context",
    "RegistryFrozenError",
    "SyncGroupError",
    "Reporter",
    "RunContext",
    "Scheduler",
    "Task",
    "TaskfileError",
    "TaskRegistry",
    "TaskStatus",
    "TaskweaveError",
    "UnknownTaskError",
    "WatchController",
    "WatchState",
]
