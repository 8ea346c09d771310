"""Tests for the concurrent scheduler.

Covers build() and build_aio(), failure propagation, sync groups, the
concurrency limit, timeouts, scoped runs and re-scoping of an active run.
"""

from __future__ import annotations

import asyncio
import threading
import time

import pytest

from taskweave import (
    ActionTimeout,
    CycleError,
    ExecutionMode,
    RunContext,
    SyncGroupError,
    Task,
    TaskRegistry,
    TaskStatus,
    UnknownTaskError,
    build,
    build_aio,
)
from taskweave.build import BuildExitStatus
from taskweave.testing import ActionLog, recording_registry, wait_until

# ============================================================================
# Test: build (sync wrapper)
# ============================================================================


class TestBuildSyncWrapper:
    def test_diamond(self, diamond, action_log, run_context):
        summary = build(diamond, "D", run_context)

        assert summary.status == BuildExitStatus.SUCCESS
        assert summary.exit_code == 0
        assert action_log.started()[0] == "A"
        assert action_log.finished()[-1] == "D"

    @pytest.mark.asyncio
    async def test_fails_inside_running_loop(self, diamond, run_context):
        with pytest.raises(RuntimeError, match="build_aio"):
            build(diamond, "D", run_context)


# ============================================================================
# Test: build_aio
# ============================================================================


class TestBuildAio:
    @pytest.mark.asyncio
    async def test_diamond_runs_independent_tasks_concurrently(
        self, action_log: ActionLog, run_context
    ):
        """B and C are both released by A and overlap in time."""
        registry = recording_registry(
            action_log,
            {"A": [], "B": ["A"], "C": ["A"], "D": ["B", "C"]},
            actions={"B": {"delay": 0.05}, "C": {"delay": 0.05}},
        )

        summary = await build_aio(registry, "D", run_context)

        assert summary.status == BuildExitStatus.SUCCESS
        assert set(summary.statuses().values()) == {TaskStatus.SUCCEEDED}
        assert action_log.max_active == 2
        assert action_log.position("start", "C") < action_log.position("end", "B")
        assert action_log.position("end", "A") < action_log.position("start", "B")
        assert action_log.position("end", "C") < action_log.position("start", "D")

    @pytest.mark.asyncio
    async def test_each_task_invoked_once(self, diamond, action_log, run_context):
        await build_aio(diamond, "D", run_context)

        for name in "ABCD":
            assert action_log.count(name) == 1

    @pytest.mark.asyncio
    async def test_only_closure_is_executed(self, diamond, action_log, run_context):
        summary = await build_aio(diamond, "B", run_context)

        assert summary.executed == ["A", "B"]
        assert "C" not in action_log.started()

    @pytest.mark.asyncio
    async def test_actions_receive_run_context(
        self, diamond, action_log, run_context
    ):
        await build_aio(diamond, "A", run_context)
        assert action_log.contexts == [run_context]

    @pytest.mark.asyncio
    async def test_registry_frozen_by_run(self, diamond, run_context):
        await build_aio(diamond, "A", run_context)
        assert diamond.frozen

    @pytest.mark.asyncio
    async def test_sync_action_runs_in_thread(self, run_context):
        threads: list[str] = []

        def action(context):
            time.sleep(0.01)
            threads.append(threading.current_thread().name)

        registry = TaskRegistry([Task("sync", action=action)])
        summary = await build_aio(registry, "sync", run_context)

        assert summary.status == BuildExitStatus.SUCCESS
        assert threads and threads[0].startswith("taskweave-action")

    @pytest.mark.asyncio
    async def test_aggregate_task_succeeds_without_action(
        self, diamond, action_log, run_context
    ):
        diamond.register(Task("all", dependencies=("B", "C")))
        summary = await build_aio(diamond, "all", run_context)

        assert summary.statuses()["all"] == TaskStatus.SUCCEEDED
        assert "all" not in action_log.started()


# ============================================================================
# Test: Failures
# ============================================================================


class TestFailures:
    @pytest.mark.asyncio
    async def test_failure_skips_dependents_only(self, action_log, run_context):
        """A failing branch never cancels or skips a sibling branch."""
        registry = recording_registry(
            action_log,
            {"A": [], "B": ["A"], "C": ["A"], "D": ["B", "C"]},
            actions={"B": {"fail": "boom"}, "C": {"delay": 0.02}},
        )

        summary = await build_aio(registry, "D", run_context)

        assert summary.status == BuildExitStatus.FAILURE
        assert summary.exit_code == 1
        assert summary.statuses() == {
            "A": TaskStatus.SUCCEEDED,
            "B": TaskStatus.FAILED,
            "C": TaskStatus.SUCCEEDED,
            "D": TaskStatus.SKIPPED,
        }
        assert "D" not in action_log.started()

        records = {r.name: r for r in summary.records}
        assert records["B"].error is not None
        assert records["B"].error.reason == "RuntimeError: boom"
        assert records["D"].skipped_because == "B"
        assert summary.error is records["B"].error

    @pytest.mark.asyncio
    async def test_skip_propagates_transitively(self, action_log, run_context):
        registry = recording_registry(
            action_log,
            {"a": [], "b": ["a"], "c": ["b"], "d": ["c"]},
            actions={"a": {"fail": "nope"}},
        )

        summary = await build_aio(registry, "d", run_context)

        assert summary.statuses() == {
            "a": TaskStatus.FAILED,
            "b": TaskStatus.SKIPPED,
            "c": TaskStatus.SKIPPED,
            "d": TaskStatus.SKIPPED,
        }
        assert action_log.started() == ["a"]
        records = {r.name: r for r in summary.records}
        assert records["c"].skipped_because == "b"

    @pytest.mark.asyncio
    async def test_failing_root_dependency_skips_both_branches(
        self, action_log, run_context
    ):
        registry = recording_registry(
            action_log,
            {"A": [], "B": ["A"], "C": ["A"], "D": ["B", "C"]},
            actions={"A": {"fail": "broken"}},
        )

        summary = await build_aio(registry, "D", run_context)

        assert summary.status == BuildExitStatus.FAILURE
        assert summary.exit_code != 0
        assert summary.statuses() == {
            "A": TaskStatus.FAILED,
            "B": TaskStatus.SKIPPED,
            "C": TaskStatus.SKIPPED,
            "D": TaskStatus.SKIPPED,
        }
        assert action_log.started() == ["A"]

    @pytest.mark.asyncio
    async def test_sync_action_failure(self, run_context):
        def broken(context):
            raise ValueError("bad input")

        registry = TaskRegistry([Task("broken", action=broken)])
        summary = await build_aio(registry, "broken", run_context)

        record = summary.records[0]
        assert record.status == TaskStatus.FAILED
        assert record.error.reason == "ValueError: bad input"

    @pytest.mark.asyncio
    async def test_timeout_settles_as_failed(self, action_log, run_context):
        registry = TaskRegistry(
            [
                Task("slow", action=action_log.action("slow", delay=5), timeout=0.05),
                Task(
                    "after",
                    dependencies=("slow",),
                    action=action_log.action("after"),
                ),
            ]
        )

        start = time.monotonic()
        summary = await build_aio(registry, "after", run_context)

        assert time.monotonic() - start < 2
        records = {r.name: r for r in summary.records}
        assert records["slow"].status == TaskStatus.FAILED
        assert isinstance(records["slow"].error, ActionTimeout)
        assert "timed out after 0.05s" in records["slow"].error.reason
        assert records["after"].status == TaskStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_timed_out_sync_action_does_not_block_loop(self, run_context):
        def slow(context):
            time.sleep(1.5)

        registry = TaskRegistry([Task("slow", action=slow, timeout=0.1)])

        start = time.monotonic()
        summary = await build_aio(registry, "slow", run_context)

        # the abandoned worker thread is still sleeping
        assert time.monotonic() - start < 1.0
        assert isinstance(summary.records[0].error, ActionTimeout)

    @pytest.mark.asyncio
    async def test_cycle_detected_before_any_action(self, action_log, run_context):
        registry = recording_registry(
            action_log, {"ok": [], "x": ["ok", "y"], "y": ["x"]}
        )

        with pytest.raises(CycleError):
            await build_aio(registry, "x", run_context)
        assert action_log.events == []

    @pytest.mark.asyncio
    async def test_unknown_root(self, diamond, action_log, run_context):
        with pytest.raises(UnknownTaskError):
            await build_aio(diamond, "E", run_context)
        assert action_log.events == []

    @pytest.mark.asyncio
    async def test_unknown_dependency_before_any_action(
        self, action_log, run_context
    ):
        registry = recording_registry(action_log, {"a": [], "b": ["a", "ghost"]})

        with pytest.raises(UnknownTaskError, match="ghost"):
            await build_aio(registry, "b", run_context)
        assert action_log.events == []


# ============================================================================
# Test: Sync groups and concurrency limit
# ============================================================================


class TestOrderingConstraints:
    @pytest.mark.asyncio
    async def test_sequence_runs_steps_strictly_in_order(
        self, action_log, run_context
    ):
        registry = recording_registry(
            action_log,
            {"zip": [], "copy": [], "clean": [], "lint": []},
            actions={
                "clean": {"delay": 0.02},
                "copy": {"delay": 0.01},
                "lint": {"delay": 0.03},
            },
        )
        registry.sequence("dist", ["clean", "copy", "zip"])
        registry.register(Task("all", dependencies=("dist", "lint")))

        summary = await build_aio(registry, "all", run_context)

        assert summary.status == BuildExitStatus.SUCCESS
        assert action_log.position("end", "clean") < action_log.position(
            "start", "copy"
        )
        assert action_log.position("end", "copy") < action_log.position(
            "start", "zip"
        )
        # lint is not in the group and overlaps with it
        assert action_log.position("start", "lint") < action_log.position(
            "end", "clean"
        )

    @pytest.mark.asyncio
    async def test_sync_groups_from_context(self, action_log, tmp_path):
        registry = recording_registry(
            action_log,
            {"b": [], "a": [], "root": ["a", "b"]},
            actions={"a": {"delay": 0.01}},
        )
        context = RunContext(base_directory=tmp_path, sync_groups=(("a", "b"),))

        await build_aio(registry, "root", context)

        assert action_log.started() == ["a", "b", "root"]

    @pytest.mark.asyncio
    async def test_sync_group_failure_skips_later_members(
        self, action_log, run_context
    ):
        registry = recording_registry(
            action_log,
            {"clean": [], "copy": [], "zip": []},
            actions={"copy": {"fail": "disk full"}},
        )
        registry.sequence("dist", ["clean", "copy", "zip"])

        summary = await build_aio(registry, "dist", run_context)

        statuses = summary.statuses()
        assert statuses["clean"] == TaskStatus.SUCCEEDED
        assert statuses["copy"] == TaskStatus.FAILED
        assert statuses["zip"] == TaskStatus.SKIPPED
        assert statuses["dist"] == TaskStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_sync_group_mode_without_group_rejected(
        self, action_log, run_context
    ):
        registry = TaskRegistry(
            [
                Task("x", action=action_log.action("x"), mode=ExecutionMode.SYNC_GROUP),
                Task("y", action=action_log.action("y")),
                Task("all", dependencies=("x", "y")),
            ]
        )

        with pytest.raises(SyncGroupError) as exc_info:
            await build_aio(registry, "all", run_context)
        assert exc_info.value.name == "x"
        assert action_log.events == []

    @pytest.mark.asyncio
    async def test_sync_group_mode_with_context_group(self, action_log, tmp_path):
        registry = TaskRegistry(
            [
                Task(
                    name,
                    action=action_log.action(name, delay=0.02),
                    mode=ExecutionMode.SYNC_GROUP,
                )
                for name in ("x", "y", "z")
            ]
            + [Task("all", dependencies=("z", "y", "x"))]
        )
        context = RunContext(base_directory=tmp_path, sync_groups=(("x", "y", "z"),))

        await build_aio(registry, "all", context)

        assert action_log.max_active == 1
        assert action_log.started() == ["x", "y", "z", "all"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("limit", [1, 2])
    async def test_concurrency_limit(self, action_log, tmp_path, limit):
        names = [f"t{i}" for i in range(5)]
        registry = recording_registry(
            action_log,
            {**{name: [] for name in names}, "all": names},
            actions={name: {"delay": 0.02} for name in names},
        )
        context = RunContext(base_directory=tmp_path, concurrency_limit=limit)

        summary = await build_aio(registry, "all", context)

        assert summary.status == BuildExitStatus.SUCCESS
        assert action_log.max_active == limit
        # ready tasks are dispatched in registration order
        assert action_log.started() == [*names, "all"]


# ============================================================================
# Test: Scoped runs and re-scoping
# ============================================================================


class TestScopedRuns:
    @pytest.mark.asyncio
    async def test_only_treats_other_tasks_as_satisfied(
        self, diamond, action_log, scheduler_factory
    ):
        scheduler = scheduler_factory(diamond)

        summary = await scheduler.run("D", only={"B", "D"})

        assert summary.executed == ["B", "D"]
        assert action_log.started() == ["B", "D"]
        assert {r.name for r in summary.records} == {"B", "D"}

    @pytest.mark.asyncio
    async def test_only_with_unknown_task(self, diamond, scheduler_factory):
        with pytest.raises(UnknownTaskError):
            await scheduler_factory(diamond).run("D", only={"nope"})

    @pytest.mark.asyncio
    async def test_only_ignores_tasks_outside_closure(
        self, diamond, action_log, scheduler_factory
    ):
        summary = await scheduler_factory(diamond).run("B", only={"B", "C"})
        assert summary.executed == ["B"]

    @pytest.mark.asyncio
    async def test_concurrent_runs_rejected(self, action_log, scheduler_factory):
        gate = asyncio.Event()
        registry = recording_registry(
            action_log, {"a": []}, actions={"a": {"gate": gate}}
        )
        scheduler = scheduler_factory(registry)

        first = asyncio.create_task(scheduler.run("a"))
        await wait_until(lambda: scheduler.running)
        with pytest.raises(RuntimeError, match="already running"):
            await scheduler.run("a")
        gate.set()
        await first

    @pytest.mark.asyncio
    async def test_rescope_adds_pending_task(self, action_log, scheduler_factory):
        gate = asyncio.Event()
        registry = recording_registry(
            action_log,
            {"A": [], "B": ["A"], "C": ["A"], "D": ["B", "C"]},
            actions={"B": {"gate": gate}},
        )
        scheduler = scheduler_factory(registry)

        run = asyncio.create_task(scheduler.run("D", only={"B"}))
        await wait_until(lambda: "B" in action_log.started())
        deferred = scheduler.rescope({"D"})
        gate.set()
        summary = await run

        assert deferred == set()
        assert summary.executed == ["B", "D"]
        assert summary.status == BuildExitStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_rescope_defers_started_tasks_and_dependents(
        self, action_log, scheduler_factory
    ):
        """Re-running a started task supersedes its pending dependents; the
        running tasks are not interrupted."""
        gate = asyncio.Event()
        registry = recording_registry(
            action_log,
            {"A": [], "B": ["A"], "C": ["A"], "D": ["B", "C"]},
            actions={"B": {"gate": gate}, "C": {"gate": gate}},
        )
        scheduler = scheduler_factory(registry)

        run = asyncio.create_task(scheduler.run("D"))
        await wait_until(lambda: {"B", "C"} <= set(action_log.started()))
        deferred = scheduler.rescope({"B"})
        gate.set()
        summary = await run

        assert deferred == {"B", "D"}
        assert summary.executed == ["A", "B", "C"]
        assert "D" not in summary.statuses()
        assert set(action_log.finished()) == {"A", "B", "C"}
        assert summary.status == BuildExitStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_rescope_without_active_run(self, diamond, scheduler_factory):
        scheduler = scheduler_factory(diamond)
        assert scheduler.rescope({"A", "unknown"}) == {"A"}
