"""Dependency graph over a task registry.

Edges mean "must complete before". They come from two sources, folded into
one relation so that cycle detection and ordering treat them uniformly:

- explicit task dependencies
- sync groups: consecutive members of a group (restricted to the tasks of the
  closure being scheduled) get an extra ordering edge

Sync edges only order tasks; they never pull a task into a closure.
"""

from __future__ import annotations

import heapq
import logging
from collections.abc import Collection, Iterable, Sequence

from taskweave._task import ExecutionMode
from taskweave.exceptions import CycleError, SyncGroupError, UnknownTaskError
from taskweave.registry import TaskRegistry

logger = logging.getLogger(__name__)

_VISITING = 1
_VISITED = 2


class DependencyGraph:
    """Read-only view of a registry as a directed acyclic graph.

    Args:
        registry: The task registry. Not mutated.
        sync_groups: Extra sync groups (e.g. from RunContext.sync_groups), in
            addition to those declared on the registry.

    Raises:
        UnknownTaskError: If a sync group names an unregistered task.
        SyncGroupError: If a SYNC_GROUP task belongs to no sync group.
    """

    def __init__(
        self,
        registry: TaskRegistry,
        sync_groups: Iterable[Sequence[str]] = (),
    ) -> None:
        self.registry = registry
        self.sync_groups: tuple[tuple[str, ...], ...] = (
            *registry.sync_groups,
            *(tuple(group) for group in sync_groups),
        )
        self._index = {name: i for i, name in enumerate(registry.names())}
        for group in self.sync_groups:
            for name in group:
                if name not in self._index:
                    raise UnknownTaskError(name)
        grouped = {name for group in self.sync_groups for name in group}
        for task in registry.list_all():
            if task.mode == ExecutionMode.SYNC_GROUP and task.name not in grouped:
                raise SyncGroupError(task.name)

    # -------------------------------------------------------------------------
    # Closure
    # -------------------------------------------------------------------------

    def closure(self, root: str) -> list[str]:
        """The root plus all transitive dependencies, in registration order.

        Raises:
            UnknownTaskError: If the root or any dependency is not registered.
        """
        if root not in self._index:
            raise UnknownTaskError(root)
        seen: set[str] = set()
        stack = [root]
        while stack:
            name = stack.pop()
            if name in seen:
                continue
            seen.add(name)
            for dep in self.registry.get(name).dependencies:
                if dep not in self._index:
                    raise UnknownTaskError(dep, referenced_by=name)
                if dep not in seen:
                    stack.append(dep)
        return sorted(seen, key=self._index.__getitem__)

    # -------------------------------------------------------------------------
    # Edges
    # -------------------------------------------------------------------------

    def _sync_edges(self, within: Collection[str]) -> dict[str, set[str]]:
        """Ordering edges from sync groups, as {task: tasks that must precede}."""
        edges: dict[str, set[str]] = {}
        for group in self.sync_groups:
            members = [name for name in group if name in within]
            for before, after in zip(members, members[1:]):
                if before != after:
                    edges.setdefault(after, set()).add(before)
        return edges

    def edges(self, within: Collection[str]) -> dict[str, set[str]]:
        """Combined predecessor sets for every task in `within`.

        Dependencies outside `within` are dropped.
        """
        sync_edges = self._sync_edges(within)
        result: dict[str, set[str]] = {}
        for name in within:
            preds = {
                dep for dep in self.registry.get(name).dependencies if dep in within
            }
            preds |= sync_edges.get(name, set())
            result[name] = preds
        return result

    def predecessors(self, name: str, within: Collection[str]) -> set[str]:
        """Tasks in `within` that must complete before `name` may start."""
        return self.edges(within)[name]

    # -------------------------------------------------------------------------
    # Validation and ordering
    # -------------------------------------------------------------------------

    def validate(self, root: str | None = None) -> list[str]:
        """Check for unknown tasks and cycles.

        Args:
            root: Validate only the closure of this task. None validates the
                whole registry (every task being its own closure root).

        Returns:
            The validated task names, in registration order.

        Raises:
            UnknownTaskError: If a referenced task is not registered.
            CycleError: If the combined dependency/ordering relation has a
                cycle. The error names the offending path.
        """
        if root is None:
            names: set[str] = set()
            for task in self.registry.list_all():
                names.update(self.closure(task.name))
            within = sorted(names, key=self._index.__getitem__)
        else:
            within = self.closure(root)
        self._check_acyclic(within)
        return within

    def _check_acyclic(self, within: Sequence[str]) -> None:
        edges = self.edges(within)
        marks: dict[str, int] = {}

        for start in within:
            if marks.get(start) == _VISITED:
                continue
            # Iterative DFS; path holds the current chain of VISITING nodes
            path: list[str] = [start]
            iterators = [iter(self._sorted(edges[start]))]
            marks[start] = _VISITING
            while iterators:
                try:
                    nxt = next(iterators[-1])
                except StopIteration:
                    marks[path.pop()] = _VISITED
                    iterators.pop()
                    continue
                mark = marks.get(nxt)
                if mark == _VISITING:
                    cycle_start = path.index(nxt)
                    # path follows "requires" edges; report in execution order
                    cycle = path[cycle_start:] + [nxt]
                    raise CycleError(list(reversed(cycle)))
                if mark is None:
                    marks[nxt] = _VISITING
                    path.append(nxt)
                    iterators.append(iter(self._sorted(edges[nxt])))

    def execution_order(self, root: str) -> list[str]:
        """A topological order of the root's closure.

        Ties are broken by registration order, so the result is deterministic
        for a given registry.

        Raises:
            UnknownTaskError, CycleError: See validate().
        """
        within = self.validate(root)
        return self.order(within)

    def order(self, within: Collection[str]) -> list[str]:
        """Topologically order a set of (already validated) tasks."""
        edges = self.edges(within)
        remaining = {name: len(preds) for name, preds in edges.items()}
        dependents: dict[str, list[str]] = {name: [] for name in edges}
        for name, preds in edges.items():
            for pred in preds:
                dependents[pred].append(name)

        heap = [(self._index[n], n) for n, count in remaining.items() if count == 0]
        heapq.heapify(heap)
        result: list[str] = []
        while heap:
            _, name = heapq.heappop(heap)
            result.append(name)
            for dependent in dependents[name]:
                remaining[dependent] -= 1
                if remaining[dependent] == 0:
                    heapq.heappush(heap, (self._index[dependent], dependent))

        if len(result) != len(remaining):
            # Only reachable when called on an unvalidated set
            leftover = [n for n in remaining if n not in set(result)]
            self._check_acyclic(self._sorted(leftover))
            raise CycleError(leftover)
        return result

    # -------------------------------------------------------------------------
    # Incremental support
    # -------------------------------------------------------------------------

    def dependents_closure(
        self, names: Iterable[str], within: Collection[str]
    ) -> set[str]:
        """The given tasks plus every task in `within` that transitively
        depends on (or is sync-ordered after) any of them."""
        edges = self.edges(within)
        dependents: dict[str, set[str]] = {name: set() for name in within}
        for name, preds in edges.items():
            for pred in preds:
                dependents[pred].add(name)

        result: set[str] = set()
        stack = [name for name in names if name in dependents]
        while stack:
            name = stack.pop()
            if name in result:
                continue
            result.add(name)
            stack.extend(dependents[name] - result)
        return result

    def _sorted(self, names: Iterable[str]) -> list[str]:
        return sorted(names, key=self._index.__getitem__)
