"""Centralized configuration for taskweave.

A build is driven by a single immutable RunContext, resolved once per
invocation and passed explicitly to the graph, the scheduler, the watch
controller and every action. Nothing else reads process state.

Configuration is loaded from multiple sources with the following priority:
1. Explicit overrides (e.g. CLI options)
2. Environment variables (TASKWEAVE_*)
3. Project config (.taskweave/config.json in working directory or parents)
4. Defaults

Usage:
    from taskweave.config import load_run_context

    context = load_run_context(concurrency_limit=4)
    print(context.base_directory)
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Mapping

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict

from taskweave.exceptions import ConfigError

logger = logging.getLogger(__name__)

# --- Constants ---

DEFAULT_WATCH_DEBOUNCE_MS = 200
PROJECT_CONFIG_DIR = ".taskweave"
PROJECT_CONFIG_FILE = "config.json"

# Checked in order when TASKWEAVE_BUILD_ID is not set.
CI_BUILD_ID_ENV_VARS = (
    "CI_PIPELINE_ID",
    "GITHUB_RUN_ID",
    "BUILD_NUMBER",
    "BUILD_BUILDID",
)


# --- Path utilities ---


def find_project_config(start: Path | None = None) -> Path | None:
    """Find .taskweave/config.json in the start directory or its parents.

    Returns:
        Path to project config if found, None otherwise.
    """
    current = (start or Path.cwd()).absolute()
    for directory in [current, *current.parents]:
        config_path = directory / PROJECT_CONFIG_DIR / PROJECT_CONFIG_FILE
        if config_path.exists():
            return config_path
    return None


def load_json_file(path: Path) -> dict[str, Any]:
    """Load a JSON config file, returning empty dict if not found.

    Raises:
        ConfigError: If the file exists but is not a valid JSON object.
    """
    if not path.exists():
        return {}
    try:
        with open(path) as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        raise ConfigError(f"Could not load {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Could not load {path}: expected a JSON object")
    return data


def resolve_build_id(environ: Mapping[str, str] | None = None) -> str | None:
    """Resolve an externally supplied build identifier from CI variables."""
    environ = os.environ if environ is None else environ
    for var in CI_BUILD_ID_ENV_VARS:
        value = environ.get(var)
        if value:
            return value
    return None


# --- Pydantic Config Models ---


class RunContext(BaseModel):
    """Immutable configuration for one invocation.

    Attributes:
        base_directory: Root for resolving relative task paths.
        name: Project name (used e.g. for archive names). Defaults to the
            name of the base directory.
        watch_debounce_ms: Window in which file change events are coalesced
            into a single rebuild.
        concurrency_limit: Max simultaneous action invocations, None for
            unbounded.
        sync_groups: Ordered task name sequences; tasks in a group run
            strictly in the given relative order.
        build_id: Opaque build/run identifier (e.g. a CI pipeline id).
        flags: Free-form feature flags for actions.
    """

    model_config = ConfigDict(frozen=True)

    base_directory: Path = Field(default_factory=Path.cwd)
    name: str = ""
    watch_debounce_ms: int = Field(default=DEFAULT_WATCH_DEBOUNCE_MS, ge=0)
    concurrency_limit: int | None = Field(default=None, ge=1)
    sync_groups: tuple[tuple[str, ...], ...] = ()
    build_id: str | None = None
    flags: Mapping[str, Any] = Field(default_factory=dict)

    @field_validator("base_directory")
    @classmethod
    def _absolute_base_directory(cls, value: Path) -> Path:
        return value.expanduser().absolute()

    @model_validator(mode="after")
    def _default_name(self) -> "RunContext":
        if not self.name:
            # frozen model
            object.__setattr__(self, "name", self.base_directory.name)
        return self

    @property
    def watch_debounce_seconds(self) -> float:
        return self.watch_debounce_ms / 1000

    def resolve(self, path: str | Path) -> Path:
        """Resolve a path relative to the base directory."""
        path = Path(path)
        if path.is_absolute():
            return path
        return self.base_directory / path

    def flag(self, key: str, default: Any = None) -> Any:
        return self.flags.get(key, default)


class ProjectConfig(BaseModel):
    """Project-level configuration (.taskweave/config.json in repo).

    Relative base directories are resolved against the project root (the
    directory containing .taskweave/).
    """

    model_config = ConfigDict(extra="ignore")

    base_directory: str | None = None
    name: str | None = None
    watch_debounce_ms: int | None = None
    concurrency_limit: int | None = None
    sync_groups: list[list[str]] | None = None
    flags: dict[str, Any] | None = None


class TaskweaveSettings(BaseSettings):
    """Settings loaded from TASKWEAVE_* environment variables."""

    base_directory: str | None = None
    name: str | None = None
    watch_debounce_ms: int | None = None
    concurrency_limit: int | None = None
    build_id: str | None = None
    flags: dict[str, Any] | None = None

    model_config = SettingsConfigDict(
        env_prefix="TASKWEAVE_",
        env_nested_delimiter="__",
        extra="ignore",
    )


# --- Config loading ---


def load_run_context(
    *,
    use_project_config: bool = True,
    environ: Mapping[str, str] | None = None,
    **overrides: Any,
) -> RunContext:
    """Load a RunContext from all sources.

    Priority (highest to lowest):
    1. Keyword overrides (None values are ignored)
    2. Environment variables (TASKWEAVE_*)
    3. Project config (.taskweave/config.json)
    4. Defaults

    Args:
        use_project_config: Whether to load .taskweave/config.json.
        environ: Environment mapping used for the CI build id fallback.
            Defaults to os.environ.
        **overrides: RunContext fields to set explicitly.

    Raises:
        ConfigError: If any source holds invalid values.
    """
    env_settings = TaskweaveSettings()

    project_config = ProjectConfig()
    project_dir: Path | None = None
    if use_project_config:
        project_path = find_project_config()
        if project_path:
            project_dir = project_path.parent.parent
            logger.debug(f"Using project config {project_path}")
            try:
                project_config = ProjectConfig.model_validate(
                    load_json_file(project_path)
                )
            except ValidationError as e:
                raise ConfigError(f"Invalid project config {project_path}: {e}") from e

    values: dict[str, Any] = {}

    base_directory = env_settings.base_directory or project_config.base_directory
    if base_directory is not None:
        base_path = Path(base_directory)
        if not base_path.is_absolute() and project_dir is not None:
            base_path = project_dir / base_path
        values["base_directory"] = base_path
    elif project_dir is not None:
        values["base_directory"] = project_dir

    for key in ("name", "watch_debounce_ms", "concurrency_limit", "flags"):
        value = getattr(env_settings, key)
        if value is None:
            value = getattr(project_config, key)
        if value is not None:
            values[key] = value

    if project_config.sync_groups:
        values["sync_groups"] = tuple(
            tuple(group) for group in project_config.sync_groups
        )

    build_id = env_settings.build_id or resolve_build_id(environ)
    if build_id:
        values["build_id"] = build_id

    values.update({k: v for k, v in overrides.items() if v is not None})

    try:
        return RunContext(**values)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e
