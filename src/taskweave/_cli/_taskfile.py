"""Taskfile loading.

A taskfile is a Python file (default `taskweave.py` in the working directory)
or an importable module that defines tasks in one of two ways:

- a `define_tasks(registry, context)` function, called with an empty
  TaskRegistry and the resolved RunContext
- a module-level `registry` (a TaskRegistry instance)
"""

from __future__ import annotations

import importlib
import importlib.util
import sys
from pathlib import Path
from types import ModuleType

from taskweave.config import RunContext
from taskweave.exceptions import TaskfileError, TaskweaveError
from taskweave.registry import TaskRegistry

DEFAULT_TASKFILE = "taskweave.py"
_TASKFILE_MODULE = "__taskweave_taskfile__"


def _import_file_or_module(file_or_module: str, use_module_mode: bool) -> ModuleType:
    """Import a file or module and return the module object."""
    if "" not in sys.path:
        # Ensure current working directory is on sys.path
        sys.path.insert(0, "")

    if not file_or_module.endswith(".py") or use_module_mode:
        return importlib.import_module(file_or_module)

    full_path = Path(file_or_module).resolve()
    if not full_path.is_file():
        raise TaskfileError(f"Taskfile not found: {file_or_module}")
    if str(full_path.parent) not in sys.path:
        sys.path.insert(0, str(full_path.parent))

    # Registered under a fixed name; taskweave.py would shadow this package
    module_name = _TASKFILE_MODULE
    spec = importlib.util.spec_from_file_location(module_name, full_path)
    if spec is None or spec.loader is None:
        raise TaskfileError(f"Cannot load module spec for: {file_or_module}")

    module = importlib.util.module_from_spec(spec)
    sys.modules[module_name] = module
    spec.loader.exec_module(module)
    return module


def load_taskfile(
    taskfile: str, context: RunContext, use_module_mode: bool = False
) -> TaskRegistry:
    """Import a taskfile and return its populated registry.

    Raises:
        TaskfileError: If the taskfile cannot be imported or defines no tasks.
        StructuralError: Propagated from task registration (e.g. duplicates).
    """
    try:
        module = _import_file_or_module(taskfile, use_module_mode)
    except TaskweaveError:
        raise
    except Exception as e:
        raise TaskfileError(f"Error importing {taskfile}: {e}") from e

    define_tasks = getattr(module, "define_tasks", None)
    if callable(define_tasks):
        registry = TaskRegistry()
        try:
            result = define_tasks(registry, context)
        except TaskweaveError:
            raise
        except Exception as e:
            raise TaskfileError(f"define_tasks() in {taskfile} failed: {e}") from e
        if isinstance(result, TaskRegistry):
            registry = result
        return registry

    registry = getattr(module, "registry", None)
    if isinstance(registry, TaskRegistry):
        return registry

    raise TaskfileError(
        f"{taskfile} defines neither define_tasks(registry, context) "
        "nor a module-level 'registry'"
    )
