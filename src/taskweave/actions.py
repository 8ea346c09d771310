"""Built-in actions.

Each action is an async callable taking the RunContext. Failures are raised
as exceptions; the executor turns them into ActionFailure for the owning task.
Relative paths are resolved against RunContext.base_directory.

- CommandAction: run an external tool (linter, test runner, bundler, ...)
- CleanAction: delete files and directories
- CopyTreeAction: copy files matching globs, preserving the relative layout
- ZipAction: archive a directory
- BuildInfoAction: write the build identifier into a JSON artifact
"""

from __future__ import annotations

import asyncio
import datetime
import json
import logging
import os
import shlex
import shutil
import zipfile
from pathlib import Path
from typing import Mapping, Sequence

from taskweave._paths import iter_files
from taskweave.config import RunContext
from taskweave.exceptions import CommandError, ConfigError

logger = logging.getLogger(__name__)


class CommandAction:
    """Run an external command.

    Output (stdout and stderr, merged) is forwarded line by line to the
    `taskweave.actions` logger. A non-zero exit status raises CommandError.
    If the awaiting task is cancelled (e.g. on timeout) the process is
    killed.

    Args:
        command: Argument list, or a string split with shlex.
        cwd: Working directory relative to the base directory.
        env: Extra environment variables.
        shell: Run `command` through the shell.
    """

    def __init__(
        self,
        command: str | Sequence[str],
        *,
        cwd: str | Path | None = None,
        env: Mapping[str, str] | None = None,
        shell: bool = False,
    ) -> None:
        if shell:
            self.args = [command if isinstance(command, str) else shlex.join(command)]
        elif isinstance(command, str):
            self.args = shlex.split(command)
        else:
            self.args = list(command)
        if not self.args:
            raise ValueError("Empty command")
        self.cwd = cwd
        self.env = dict(env or {})
        self.shell = shell

    @property
    def display(self) -> str:
        return self.args[0] if self.shell else shlex.join(self.args)

    async def __call__(self, context: RunContext) -> None:
        cwd = context.resolve(self.cwd) if self.cwd else context.base_directory
        env = {**os.environ, **self.env}
        if context.build_id:
            env.setdefault("TASKWEAVE_BUILD_ID", context.build_id)

        logger.debug(f"$ {self.display} (cwd={cwd})")
        if self.shell:
            proc = await asyncio.create_subprocess_shell(
                self.args[0],
                cwd=cwd,
                env=env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        else:
            proc = await asyncio.create_subprocess_exec(
                *self.args,
                cwd=cwd,
                env=env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )

        try:
            assert proc.stdout is not None
            async for line in proc.stdout:
                logger.info(line.decode(errors="replace").rstrip())
            returncode = await proc.wait()
        except asyncio.CancelledError:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
            raise

        if returncode != 0:
            raise CommandError(self.display, returncode)

    def __repr__(self) -> str:
        return f"CommandAction({self.display!r})"


class CleanAction:
    """Delete files and directories. Missing paths are ignored."""

    def __init__(self, *paths: str | Path) -> None:
        self.paths = paths

    async def __call__(self, context: RunContext) -> None:
        await asyncio.to_thread(self._clean, context)

    def _clean(self, context: RunContext) -> None:
        for path in self.paths:
            target = context.resolve(path)
            if target.is_dir() and not target.is_symlink():
                shutil.rmtree(target)
                logger.debug(f"Removed directory {target}")
            elif target.exists() or target.is_symlink():
                target.unlink()
                logger.debug(f"Removed {target}")


class CopyTreeAction:
    """Copy files matching glob patterns into a destination directory.

    Paths are kept relative to `source` (the copy root). Patterns starting
    with `!` exclude earlier matches.

    Args:
        patterns: Include/exclude globs, relative to `source`.
        dest: Destination directory.
        source: Copy root, defaults to the base directory.
    """

    def __init__(
        self,
        patterns: Sequence[str],
        dest: str | Path,
        source: str | Path = ".",
    ) -> None:
        self.patterns = list(patterns)
        self.dest = dest
        self.source = source

    async def __call__(self, context: RunContext) -> None:
        copied = await asyncio.to_thread(self._copy, context)
        logger.debug(f"Copied {copied} files to {context.resolve(self.dest)}")

    def _copy(self, context: RunContext) -> int:
        source = context.resolve(self.source)
        dest = context.resolve(self.dest)
        # Never copy the destination into itself
        files = [
            path
            for path in iter_files(source, self.patterns)
            if not path.is_relative_to(dest)
        ]
        for path in files:
            target = dest / path.relative_to(source)
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(path, target)
        return len(files)


class ZipAction:
    """Archive the contents of a directory.

    Args:
        source: Directory to archive.
        archive: Archive path. Defaults to `<source>/<project name>.zip`.
    """

    def __init__(
        self, source: str | Path = "dist", archive: str | Path | None = None
    ) -> None:
        self.source = source
        self.archive = archive

    def archive_path(self, context: RunContext) -> Path:
        if self.archive is not None:
            return context.resolve(self.archive)
        return context.resolve(self.source) / f"{context.name}.zip"

    async def __call__(self, context: RunContext) -> None:
        await asyncio.to_thread(self._zip, context)

    def _zip(self, context: RunContext) -> None:
        source = context.resolve(self.source)
        archive = self.archive_path(context)
        if not source.is_dir():
            raise FileNotFoundError(f"Nothing to archive: {source} is not a directory")
        archive.parent.mkdir(parents=True, exist_ok=True)
        tmp = archive.with_name(archive.name + ".tmp")
        with zipfile.ZipFile(tmp, "w", compression=zipfile.ZIP_DEFLATED) as zf:
            for path in iter_files(source, ["**"]):
                if path in (archive, tmp):
                    continue
                zf.write(path, path.relative_to(source).as_posix())
        tmp.replace(archive)
        logger.debug(f"Wrote {archive}")


class BuildInfoAction:
    """Write the build identifier into a JSON file.

    Fails when no build identifier is configured (TASKWEAVE_BUILD_ID or a CI
    pipeline variable).
    """

    def __init__(self, path: str | Path = "build-info.json") -> None:
        self.path = path

    async def __call__(self, context: RunContext) -> None:
        if not context.build_id:
            raise ConfigError(
                "No build id configured; set TASKWEAVE_BUILD_ID or run in CI"
            )
        target = context.resolve(self.path)
        info = {
            "name": context.name,
            "build_id": context.build_id,
            "created_at": datetime.datetime.now(datetime.timezone.utc).isoformat(),
        }
        target.parent.mkdir(parents=True, exist_ok=True)
        await asyncio.to_thread(target.write_text, json.dumps(info, indent=2) + "\n")


__all__ = [
    "BuildInfoAction",
    "CleanAction",
    "CommandAction",
    "CopyTreeAction",
    "ZipAction",
]
