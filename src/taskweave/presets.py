"""Standard task set for packaging a project.

`define_standard_tasks` registers the usual lint/clean/copy/zip pipeline plus
test runners on a registry:

    lint          run the linter
    clean         delete the dist directory
    copy          copy project files into dist           (after clean)
    build-info    write the build id into dist           (after copy, optional)
    zip           archive dist into <name>.zip           (after copy)
    dist          clean, copy, zip strictly in order
    test.server   server test suite                      (15s timeout)
    test.ui       UI test suite                          (30s timeout)
    default       dist

Usage in a taskfile:

    from taskweave.presets import StandardTaskOptions, define_standard_tasks

    def define_tasks(registry, context):
        define_standard_tasks(registry, StandardTaskOptions(lint_command="flake8"))
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from taskweave._task import Task
from taskweave.actions import (
    BuildInfoAction,
    CleanAction,
    CommandAction,
    CopyTreeAction,
    ZipAction,
)
from taskweave.registry import TaskRegistry

DEFAULT_LINT_SOURCES = [
    "**/*.py",
    "!.venv/**",
    "!**/node_modules/**",
    "!docs/**",
    "!dist/**",
    "!build/**",
]

DEFAULT_COPY_PATTERNS = [
    "src/**",
    "config/**",
    "*.json",
    "*.md",
    "*.toml",
    "*.py",
    "!**/__pycache__/**",
]


class StandardTaskOptions(BaseModel):
    """Options for `define_standard_tasks`.

    Commands are argument lists or shell-like strings (split with shlex).
    Globs are relative to the base directory.
    """

    model_config = ConfigDict(extra="forbid")

    dist_dir: str = "dist"
    archive_name: str | None = Field(
        default=None,
        description="Archive file name, defaults to '<project name>.zip'.",
    )

    lint_command: str | list[str] = "ruff check --fix ."
    lint_sources: list[str] = Field(default_factory=lambda: list(DEFAULT_LINT_SOURCES))

    copy_patterns: list[str] = Field(
        default_factory=lambda: list(DEFAULT_COPY_PATTERNS)
    )

    build_info_file: str | None = Field(
        default=None,
        description="Write a build info JSON file with this name into dist.",
    )

    test_server_command: str | list[str] = "pytest tests/server"
    test_server_sources: list[str] = Field(
        default_factory=lambda: ["tests/server/**/*_test.py", "src/**/*.py"]
    )
    test_server_timeout: float = Field(default=15.0, gt=0)

    test_ui_command: str | list[str] = "pytest tests/ui"
    test_ui_sources: list[str] = Field(
        default_factory=lambda: ["tests/ui/**/*_test.py", "src/**/*.py"]
    )
    test_ui_timeout: float = Field(default=30.0, gt=0)


def define_standard_tasks(
    registry: TaskRegistry, options: StandardTaskOptions | None = None
) -> TaskRegistry:
    """Register the standard task set on `registry`.

    Raises:
        DuplicateTaskError: If any of the standard task names is taken.
    """
    options = options or StandardTaskOptions()
    dist = options.dist_dir

    registry.register(
        Task(
            "lint",
            action=CommandAction(options.lint_command),
            sources=tuple(options.lint_sources),
            description="Run the linter",
        )
    )

    clean = Task("clean", action=CleanAction(dist), description=f"Delete {dist}/")
    copy = Task(
        "copy",
        dependencies=("clean",),
        action=CopyTreeAction([*options.copy_patterns, f"!{dist}/**"], dist),
        sources=tuple(options.copy_patterns),
        description=f"Copy project files into {dist}/",
    )
    zip_dependencies = ["copy"]
    extra: list[Task] = []
    if options.build_info_file:
        extra.append(
            Task(
                "build-info",
                dependencies=("copy",),
                action=BuildInfoAction(f"{dist}/{options.build_info_file}"),
                description="Write the build id into the distribution",
            )
        )
        zip_dependencies.append("build-info")
    archive = f"{dist}/{options.archive_name}" if options.archive_name else None
    zip_ = Task(
        "zip",
        dependencies=tuple(zip_dependencies),
        action=ZipAction(dist, archive),
        description=f"Archive {dist}/",
    )

    registry.register(clean)
    registry.register(copy)
    for task in extra:
        registry.register(task)
    registry.register(zip_)
    registry.sequence(
        "dist", ["clean", "copy", "zip"], description="Build the distribution archive"
    )

    registry.register(
        Task(
            "test.server",
            action=CommandAction(options.test_server_command),
            sources=tuple(options.test_server_sources),
            description="Run the server test suite",
            timeout=options.test_server_timeout,
        )
    )
    registry.register(
        Task(
            "test.ui",
            action=CommandAction(options.test_ui_command),
            sources=tuple(options.test_ui_sources),
            description="Run the UI test suite",
            timeout=options.test_ui_timeout,
        )
    )

    registry.register(
        Task("default", dependencies=("dist",), description="Same as dist")
    )
    return registry


__all__ = ["StandardTaskOptions", "define_standard_tasks"]
