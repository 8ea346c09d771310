"""Watch mode.

The WatchController subscribes to filesystem changes below the base
directory, maps changed paths to the tasks that declared them as sources and
re-runs only those tasks and their dependents through the Scheduler.

State machine:

    IDLE -> WATCHING -> REBUILDING -> WATCHING -> ... -> STOPPED

- Change events are debounced: events arriving within
  RunContext.watch_debounce_ms of each other form one batch and one rebuild.
- A batch arriving while a rebuild is in progress re-scopes the rebuild's
  not-yet-started work. Tasks already running finish; tasks that must run
  again are collected into a follow-up rebuild.
- Task failures are reported and watching continues.

Filesystem events come from a watchdog observer thread and are handed to the
event loop with `call_soon_threadsafe`; all controller state is owned by the
event loop.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import Callable, Iterable

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer
from watchdog.observers.api import BaseObserver

from taskweave._paths import matches_any
from taskweave.build import BuildSummary, Scheduler
from taskweave.graph import DependencyGraph

logger = logging.getLogger(__name__)

ObserverFactory = Callable[[], BaseObserver]

_RELEVANT_EVENTS = {"created", "deleted", "modified", "moved"}


class WatchState(StrEnum):
    IDLE = "idle"
    WATCHING = "watching"
    REBUILDING = "rebuilding"
    STOPPED = "stopped"


@dataclass(frozen=True)
class WatchSubscription:
    """Source patterns of one task."""

    task_name: str
    patterns: tuple[str, ...]

    def matches(self, relpath: str) -> bool:
        return matches_any(relpath, self.patterns)


class _ChangeHandler(FileSystemEventHandler):
    """Forwards relevant watchdog events to the controller's event loop."""

    def __init__(self, controller: WatchController, loop: asyncio.AbstractEventLoop):
        self.controller = controller
        self.loop = loop

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory or event.event_type not in _RELEVANT_EVENTS:
            return
        paths = [os.fsdecode(event.src_path)]
        dest = getattr(event, "dest_path", "")
        if dest:
            paths.append(os.fsdecode(dest))
        try:
            self.loop.call_soon_threadsafe(self.controller.notify, paths)
        except RuntimeError:
            # Loop closed while the observer thread was shutting down
            logger.debug(f"Dropped change event for {paths}: event loop closed")


class WatchController:
    """Re-runs the affected part of a root's closure on source changes.

    Args:
        scheduler: Scheduler used for every rebuild. Its reporter receives
            the records of each rebuild.
        root: The task whose closure is watched.
        observer_factory: Creates the watchdog observer (default: the
            platform's native Observer).

    Example:
        controller = WatchController(Scheduler(registry, context), "default")
        await controller.run_forever()
    """

    def __init__(
        self,
        scheduler: Scheduler,
        root: str,
        observer_factory: ObserverFactory | None = None,
    ) -> None:
        self.scheduler = scheduler
        self.root = root
        self.context = scheduler.context
        self.observer_factory: ObserverFactory = observer_factory or Observer
        self.state = WatchState.IDLE
        self.subscriptions: list[WatchSubscription] = []
        self.rebuilds: list[BuildSummary] = []

        self._graph: DependencyGraph | None = None
        self._closure: list[str] = []
        self._observer: BaseObserver | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

        # Tasks affected by events not yet turned into a batch
        self._batch: set[str] = set()
        self._last_event_at = 0.0
        self._debouncer: asyncio.Task | None = None
        # Rebuild work not covered by the active rebuild
        self._followup: set[str] = set()
        self._followup_full = False
        self._rebuild_task: asyncio.Task | None = None
        self._idle = asyncio.Event()
        self._stopped = asyncio.Event()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self, observe: bool = True) -> None:
        """Validate the root's closure, create subscriptions and start
        observing the base directory.

        Args:
            observe: Start a watchdog observer. With False, changes are only
                picked up through `notify()`.

        Raises:
            UnknownTaskError, CycleError: On invalid definitions.
        """
        if self.state != WatchState.IDLE:
            raise RuntimeError(f"Cannot start watch controller in state {self.state}")
        self._loop = asyncio.get_running_loop()
        self._graph = self.scheduler.graph()
        self._closure = self._graph.validate(self.root)

        for name in self._closure:
            task = self.scheduler.registry.get(name)
            if task.sources:
                self.subscriptions.append(WatchSubscription(name, task.sources))
        if not self.subscriptions:
            logger.warning(
                f"No task in the closure of '{self.root}' declares sources; "
                "nothing to watch"
            )

        if observe:
            base = self.context.base_directory
            self._observer = self.observer_factory()
            self._observer.schedule(
                _ChangeHandler(self, self._loop), str(base), recursive=True
            )
            self._observer.start()
            logger.info(f"Watching {base} for changes")

        self.state = WatchState.WATCHING
        self._idle.set()

    async def stop(self) -> None:
        """Stop watching. Running actions are allowed to finish."""
        if self.state == WatchState.STOPPED:
            return
        self.state = WatchState.STOPPED
        self._batch.clear()
        self._followup.clear()
        self._followup_full = False

        if self._debouncer is not None:
            self._debouncer.cancel()
            self._debouncer = None
        if self._observer is not None:
            observer = self._observer
            self._observer = None
            observer.stop()
            await asyncio.to_thread(observer.join)
        if self._rebuild_task is not None:
            try:
                await self._rebuild_task
            except asyncio.CancelledError:
                pass
            self._rebuild_task = None

        self.subscriptions.clear()
        self._stopped.set()
        self._idle.set()
        logger.info("Stopped watching")

    async def run_forever(self, initial_build: bool = True) -> None:
        """Start watching and block until stop() is called (or cancelled).

        Args:
            initial_build: Build the whole closure once before waiting for
                changes.
        """
        await self.start()
        try:
            if initial_build:
                self._request_rebuild(None)
            await self._stopped.wait()
        finally:
            await self.stop()

    async def wait_idle(self) -> None:
        """Wait until no change batch is pending and no rebuild is running."""
        await self._idle.wait()

    # -------------------------------------------------------------------------
    # Change handling
    # -------------------------------------------------------------------------

    def affected_tasks(self, paths: Iterable[str | os.PathLike[str]]) -> set[str]:
        """Tasks whose sources match any of the paths (not their dependents)."""
        base = self.context.base_directory
        matched: set[str] = set()
        for path in paths:
            path = Path(path)
            if not path.is_absolute():
                path = base / path
            try:
                relpath = path.relative_to(base).as_posix()
            except ValueError:
                continue
            for subscription in self.subscriptions:
                if subscription.matches(relpath):
                    matched.add(subscription.task_name)
        return matched

    def notify(self, paths: Iterable[str | os.PathLike[str]]) -> None:
        """Record changed paths. Must be called on the controller's loop."""
        if self.state in (WatchState.IDLE, WatchState.STOPPED):
            return
        matched = self.affected_tasks(paths)
        if not matched:
            return
        assert self._graph is not None and self._loop is not None
        affected = self._graph.dependents_closure(matched, self._closure)
        logger.debug(f"Change affects {sorted(matched)} -> {sorted(affected)}")

        self._batch |= affected
        self._last_event_at = self._loop.time()
        self._idle.clear()
        if self._debouncer is None or self._debouncer.done():
            self._debouncer = self._loop.create_task(self._debounce())

    async def _debounce(self) -> None:
        """Wait until no event arrived for the debounce window, then emit."""
        assert self._loop is not None
        window = self.context.watch_debounce_seconds
        while True:
            remaining = self._last_event_at + window - self._loop.time()
            if remaining <= 0:
                break
            await asyncio.sleep(remaining)
        batch, self._batch = self._batch, set()
        self._debouncer = None
        if batch and self.state != WatchState.STOPPED:
            self._request_rebuild(batch)
        self._update_idle()

    def _request_rebuild(self, only: set[str] | None) -> None:
        """Start a rebuild, or fold the work into the active one.

        Args:
            only: Tasks to run, None for the whole closure.
        """
        if self._rebuild_task is None or self._rebuild_task.done():
            self._rebuild_task = asyncio.create_task(self._rebuild_loop(only))
            return

        # Supersede not-yet-started work of the active rebuild
        if only is None:
            self._followup_full = True
        else:
            self._followup |= self.scheduler.rescope(only)
        logger.info("Changes detected during rebuild; rescheduling pending work")

    async def _rebuild_loop(self, only: set[str] | None) -> None:
        self._idle.clear()
        try:
            while self.state != WatchState.STOPPED:
                self.state = WatchState.REBUILDING
                await self._rebuild(only)
                if self._followup_full:
                    only, self._followup_full = None, False
                    self._followup.clear()
                elif self._followup:
                    only, self._followup = self._followup, set()
                else:
                    break
        finally:
            if self.state != WatchState.STOPPED:
                self.state = WatchState.WATCHING
            self._rebuild_task = None
            self._update_idle()

    async def _rebuild(self, only: set[str] | None) -> None:
        scope = "all tasks" if only is None else ", ".join(sorted(only))
        logger.info(f"Rebuilding '{self.root}' ({scope})")
        try:
            summary = await self.scheduler.run(self.root, only=only)
        except Exception:
            logger.exception(f"Rebuild of '{self.root}' aborted")
            return
        self.rebuilds.append(summary)
        reporter = self.scheduler.reporter
        logger.info(reporter.summary())
        reporter.flush()

    def _update_idle(self) -> None:
        rebuilding = self._rebuild_task is not None and not self._rebuild_task.done()
        debouncing = self._debouncer is not None and not self._debouncer.done()
        if not (rebuilding or debouncing or self._batch):
            self._idle.set()
