import pytest

from taskweave import (
    CycleError,
    DuplicateTaskError,
    ExecutionMode,
    RegistryFrozenError,
    Task,
    TaskRegistry,
    UnknownTaskError,
)


class TestTask:
    def test_dependencies_are_deduplicated_in_order(self):
        task = Task("t", dependencies=("b", "a", "b"))
        assert task.dependencies == ("b", "a")

    def test_self_dependency_is_a_cycle(self):
        with pytest.raises(CycleError) as exc_info:
            Task("t", dependencies=("t",))
        assert exc_info.value.path == ["t", "t"]

    def test_empty_name_rejected(self):
        with pytest.raises(ValueError):
            Task("")

    def test_non_positive_timeout_rejected(self):
        with pytest.raises(ValueError, match="timeout"):
            Task("t", timeout=0)

    def test_aggregate_without_action(self):
        assert Task("group", dependencies=("a",)).is_aggregate
        assert not Task("t", action=lambda context: None).is_aggregate

    def test_mode_accepts_string(self):
        assert Task("t", mode="sync-group").mode == ExecutionMode.SYNC_GROUP


class TestTaskRegistry:
    def test_register_and_get(self):
        registry = TaskRegistry()
        task = registry.register(Task("a"))
        assert registry.get("a") is task
        assert "a" in registry
        assert len(registry) == 1

    def test_list_all_in_registration_order(self):
        registry = TaskRegistry([Task("c"), Task("a"), Task("b")])
        assert [t.name for t in registry.list_all()] == ["c", "a", "b"]
        assert registry.names() == ["c", "a", "b"]
        assert registry.index_of("a") == 1

    def test_duplicate_name_rejected(self):
        """Re-registering a name keeps the original definition."""
        registry = TaskRegistry()
        original = registry.register(Task("a", description="first"))
        with pytest.raises(DuplicateTaskError) as exc_info:
            registry.register(Task("a", description="second"))
        assert exc_info.value.name == "a"
        assert registry.get("a") is original

    def test_get_unknown(self):
        with pytest.raises(UnknownTaskError, match="'missing'"):
            TaskRegistry().get("missing")

    def test_dependencies_may_be_registered_later(self):
        registry = TaskRegistry()
        registry.register(Task("b", dependencies=("a",)))
        registry.register(Task("a"))
        assert registry.names() == ["b", "a"]

    def test_frozen_registry_rejects_registration(self):
        registry = TaskRegistry([Task("a")])
        registry.freeze()
        assert registry.frozen
        with pytest.raises(RegistryFrozenError):
            registry.register(Task("b"))
        with pytest.raises(RegistryFrozenError):
            registry.sequence("s", ["a"])

    def test_task_decorator(self):
        registry = TaskRegistry()

        @registry.task("compile", ["generate"], sources=["src/**/*.py"], timeout=5)
        def compile_(context):
            """Compile sources.

            More details.
            """

        task = registry.get("compile")
        assert task.action is compile_
        assert task.dependencies == ("generate",)
        assert task.sources == ("src/**/*.py",)
        assert task.timeout == 5
        assert task.description == "Compile sources."

    def test_sequence_registers_sync_group(self):
        registry = TaskRegistry([Task("clean"), Task("copy"), Task("zip")])
        dist = registry.sequence("dist", ["clean", "copy", "zip"])

        assert dist.is_aggregate
        assert dist.dependencies == ("clean", "copy", "zip")
        assert registry.sync_groups == (("clean", "copy", "zip"),)
        for name in ("clean", "copy", "zip"):
            assert registry.get(name).mode == ExecutionMode.SYNC_GROUP

    def test_sequence_registers_task_steps(self):
        registry = TaskRegistry()
        registry.sequence("all", [Task("one"), Task("two")])
        assert registry.names() == ["one", "two", "all"]

    def test_sequence_duplicate_name(self):
        registry = TaskRegistry([Task("a")])
        with pytest.raises(DuplicateTaskError):
            registry.sequence("a", [])
