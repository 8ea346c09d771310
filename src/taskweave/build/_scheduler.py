"""Concurrent scheduler.

This module contains:
- Scheduler: validates a root's closure and executes it concurrently
- build_aio(): Async convenience wrapper
- build(): Sync wrapper for build_aio()

All bookkeeping (execution records, readiness, skip propagation) happens in
the single coroutine driving `Scheduler.run`; actions run as separate asyncio
tasks and only hand back their settlement. This prevents a task from being
dispatched twice when its last dependencies settle at the same time.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Collection, Iterable

from taskweave._task import Task
from taskweave.build._base import (
    ActionExecutorABC,
    BuildExitStatus,
    BuildSummary,
    ExecutionRecord,
    TaskStatus,
)
from taskweave.build._executor import ActionExecutor
from taskweave.build._report import Reporter, order_records
from taskweave.config import RunContext
from taskweave.exceptions import ActionFailure, UnknownTaskError
from taskweave.graph import DependencyGraph
from taskweave.registry import TaskRegistry

logger = logging.getLogger(__name__)


class _Run:
    """Mutable state of one scheduler run. Only touched by the coordinator."""

    def __init__(
        self,
        root: str,
        graph: DependencyGraph,
        closure: list[str],
        scope: set[str],
    ) -> None:
        self.root = root
        self.graph = graph
        self.closure = closure
        self.closure_set = set(closure)
        self.edges = graph.edges(closure)
        self.scope = scope
        self.records: dict[str, ExecutionRecord] = {
            name: ExecutionRecord(name) for name in closure if name in scope
        }
        self.in_flight: dict[str, asyncio.Task] = {}
        self.wakeup = asyncio.Event()
        self.dispatch_seq = 0
        self.first_error: ActionFailure | None = None
        self.finished = False

    def status(self, name: str) -> TaskStatus | None:
        record = self.records.get(name)
        return record.status if record is not None else None

    def started(self, name: str) -> bool:
        status = self.status(name)
        return status is not None and status != TaskStatus.PENDING


class Scheduler:
    """Executes the closure of a root task.

    Args:
        registry: Task definitions. Frozen when the first run starts.
        context: The run's immutable configuration, passed to every action.
        executor: Invokes actions (default: ActionExecutor).
        reporter: Receives records as tasks start and settle (default: a new
            Reporter).

    Example:
        scheduler = Scheduler(registry, context)
        summary = await scheduler.run("dist")
        sys.exit(summary.exit_code)
    """

    def __init__(
        self,
        registry: TaskRegistry,
        context: RunContext,
        executor: ActionExecutorABC | None = None,
        reporter: Reporter | None = None,
    ) -> None:
        self.registry = registry
        self.context = context
        self.executor = executor or ActionExecutor()
        self.reporter = reporter or Reporter()
        self._run: _Run | None = None

    # -------------------------------------------------------------------------
    # Graph helpers
    # -------------------------------------------------------------------------

    def graph(self) -> DependencyGraph:
        """Freeze the registry and build the dependency graph."""
        self.registry.freeze()
        return DependencyGraph(self.registry, self.context.sync_groups)

    def plan(self, root: str) -> list[str]:
        """The order in which tasks of the root's closure would start when run
        one at a time.

        Raises:
            StructuralError: On invalid definitions.
        """
        return self.graph().execution_order(root)

    @property
    def running(self) -> bool:
        return self._run is not None and not self._run.finished

    # -------------------------------------------------------------------------
    # Run
    # -------------------------------------------------------------------------

    async def run(self, root: str, only: Iterable[str] | None = None) -> BuildSummary:
        """Execute the closure of `root`.

        Args:
            root: The requested task.
            only: Restrict execution to these tasks of the closure. Closure
                tasks outside `only` are treated as already satisfied. None
                executes the whole closure.

        Returns:
            BuildSummary with one record per executed task.

        Raises:
            StructuralError: Before any action runs (unknown task, cycle or a
                sync-group task in no group).
            RuntimeError: If a run is already in progress on this scheduler.
        """
        if self.running:
            raise RuntimeError("Scheduler is already running a build")

        graph = self.graph()
        closure = graph.validate(root)
        if only is None:
            scope = set(closure)
        else:
            only = set(only)
            for name in only:
                if name not in self.registry:
                    raise UnknownTaskError(name)
            scope = only & set(closure)

        run = _Run(root, graph, closure, scope)
        self._run = run
        self.reporter.build_start(root, [n for n in closure if n in scope])
        await self.executor.setup()
        try:
            await self._drive(run)
        finally:
            run.finished = True
            self._cancel_in_flight(run)
            await self.executor.teardown()

        failed = any(r.status == TaskStatus.FAILED for r in run.records.values())
        summary = BuildSummary(
            root=root,
            status=BuildExitStatus.FAILURE if failed else BuildExitStatus.SUCCESS,
            records=order_records(list(run.records.values()), closure),
            error=run.first_error,
        )
        self.reporter.build_complete(summary)
        return summary

    async def _drive(self, run: _Run) -> None:
        while True:
            self._skip_blocked(run)
            for name in self._find_ready(run):
                self._dispatch(run, name)

            if not run.in_flight:
                stuck = [
                    name
                    for name, record in run.records.items()
                    if record.status == TaskStatus.PENDING
                ]
                if stuck:
                    # Unreachable for a validated graph
                    raise RuntimeError(
                        f"Deadlock: {len(stuck)} tasks cannot proceed: {stuck[:5]}"
                    )
                break

            run.wakeup.clear()
            wakeup = asyncio.ensure_future(run.wakeup.wait())
            try:
                done, _ = await asyncio.wait(
                    [*run.in_flight.values(), wakeup],
                    return_when=asyncio.FIRST_COMPLETED,
                )
            finally:
                wakeup.cancel()

            for name, future in list(run.in_flight.items()):
                if future in done:
                    del run.in_flight[name]
                    self._settle(run, name, future)

    def _find_ready(self, run: _Run) -> list[str]:
        """Pending tasks whose predecessors all settled as succeeded (or are
        outside the run's scope), in registration order."""
        limit = self.context.concurrency_limit
        ready: list[str] = []
        for name in run.closure:
            if run.status(name) != TaskStatus.PENDING:
                continue
            if limit is not None and len(run.in_flight) + len(ready) >= limit:
                break
            if all(
                pred not in run.scope or run.status(pred) == TaskStatus.SUCCEEDED
                for pred in run.edges[name]
            ):
                ready.append(name)
        return ready

    def _skip_blocked(self, run: _Run) -> None:
        """Mark pending tasks with a failed or skipped predecessor as skipped.

        Runs to a fixed point; the closure is in registration order, not
        topological order.
        """
        changed = True
        while changed:
            changed = False
            for name in run.closure:
                if run.status(name) != TaskStatus.PENDING:
                    continue
                for pred in sorted(run.edges[name], key=run.closure.index):
                    if run.status(pred) in (TaskStatus.FAILED, TaskStatus.SKIPPED):
                        record = run.records[name]
                        record.mark_skipped(because=pred)
                        self.reporter.task_settle(record)
                        changed = True
                        break

    def _dispatch(self, run: _Run, name: str) -> None:
        task = self.registry.get(name)
        record = run.records[name]
        record.mark_running(run.dispatch_seq)
        run.dispatch_seq += 1
        self.reporter.task_start(record)
        run.in_flight[name] = asyncio.create_task(
            self._execute(task), name=f"taskweave:{name}"
        )

    async def _execute(self, task: Task) -> ActionFailure | None:
        return await self.executor.submit(task, self.context)

    def _settle(self, run: _Run, name: str, future: asyncio.Task) -> None:
        record = run.records[name]
        try:
            result = future.result()
        except Exception as e:
            # Executors report failures as values; anything raised is a bug
            # in the executor, but still settles only this task.
            logger.exception(f"Executor raised while running '{name}'")
            result = ActionFailure(name, f"{type(e).__name__}: {e}")

        if result is None:
            record.mark_succeeded()
        else:
            record.mark_failed(result)
            if run.first_error is None:
                run.first_error = result
        self.reporter.task_settle(record)

    def _cancel_in_flight(self, run: _Run) -> None:
        for future in run.in_flight.values():
            future.cancel()
        run.in_flight.clear()

    # -------------------------------------------------------------------------
    # Watch mode support
    # -------------------------------------------------------------------------

    def rescope(self, add: Collection[str]) -> set[str]:
        """Re-scope the not-yet-started work of the active run.

        Tasks in `add` that have not started are added to the run. Tasks in
        `add` that already started (running or settled) must run again, so
        they, and everything in the closure ordered after them, are dropped
        from the run's pending work and returned for a follow-up run. Running
        tasks are never interrupted.

        Returns:
            Task names that could not be handled by the active run. When no
            run is active, all of `add` (restricted to registered tasks).
        """
        run = self._run
        if run is None or run.finished:
            return {name for name in add if name in self.registry}

        add = {name for name in add if name in run.closure_set}
        rerun = {name for name in add if run.started(name)}
        deferred = run.graph.dependents_closure(rerun, run.closure)

        for name in run.closure:
            if name in deferred:
                if not run.started(name) and name in run.records:
                    # Pending work superseded by the follow-up run
                    del run.records[name]
                    run.scope.discard(name)
                    self.reporter.discard(name)
            elif name in add and name not in run.scope:
                run.scope.add(name)
                run.records[name] = ExecutionRecord(name)
                self.reporter.record(run.records[name])

        # A re-run task must not count as satisfied for the current run
        run.scope |= rerun
        logger.debug(
            f"Re-scoped '{run.root}': added={sorted(add)}, deferred={sorted(deferred)}"
        )
        run.wakeup.set()
        return deferred


# =============================================================================
# Convenience functions
# =============================================================================


async def build_aio(
    registry: TaskRegistry,
    root: str,
    context: RunContext | None = None,
    executor: ActionExecutorABC | None = None,
    reporter: Reporter | None = None,
) -> BuildSummary:
    """Build the closure of `root` concurrently.

    Args:
        registry: Task definitions.
        root: Name of the task to build.
        context: Run configuration (default: RunContext()).
        executor: Action executor (default: ActionExecutor).
        reporter: Reporter receiving execution records.

    Returns:
        BuildSummary with status and per-task records.
    """
    scheduler = Scheduler(
        registry, context or RunContext(), executor=executor, reporter=reporter
    )
    return await scheduler.run(root)


def build(
    registry: TaskRegistry,
    root: str,
    context: RunContext | None = None,
    executor: ActionExecutorABC | None = None,
    reporter: Reporter | None = None,
) -> BuildSummary:
    """Build the closure of `root` (sync wrapper for build_aio).

    Note:
        This function cannot be called from within an already running event
        loop. Use `await build_aio()` instead.
    """
    try:
        return asyncio.run(build_aio(registry, root, context, executor, reporter))
    except RuntimeError as e:
        if "cannot be called from a running event loop" in str(e):
            raise RuntimeError(
                "build() cannot be used from within an already running event loop. "
                "Use 'await build_aio()' instead."
            ) from e
        raise


__all__ = [
    "Scheduler",
    "build",
    "build_aio",
]
