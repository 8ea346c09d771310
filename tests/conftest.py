import os
import typing
from pathlib import Path

import pytest

from taskweave import RunContext, TaskRegistry
from taskweave.config import CI_BUILD_ID_ENV_VARS
from taskweave.testing import ActionLog, recording_registry, temp_env_vars


@pytest.fixture(scope="function", autouse=True)
def cleared_taskweave_env_vars() -> typing.Generator[None, None, None]:
    """Clear TASKWEAVE_* and CI build id environment variables for the
    duration of the test."""
    env_vars = [var for var in os.environ if var.startswith("TASKWEAVE_")]
    env_vars += list(CI_BUILD_ID_ENV_VARS)
    with temp_env_vars({var: None for var in env_vars}):
        yield


@pytest.fixture(scope="function")
def action_log() -> ActionLog:
    return ActionLog()


@pytest.fixture(scope="function")
def run_context(tmp_path: Path) -> RunContext:
    return RunContext(base_directory=tmp_path, watch_debounce_ms=50)


@pytest.fixture(scope="function")
def diamond(action_log: ActionLog) -> TaskRegistry:
    """D depends on B and C, both depend on A."""
    return recording_registry(
        action_log,
        {"A": [], "B": ["A"], "C": ["A"], "D": ["B", "C"]},
    )
