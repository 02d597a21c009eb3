"""Model graph: dependency edges, deterministic ordering, and cycle detection."""

from __future__ import annotations

import heapq
from collections import deque

from strata.engine.errors import LoadError
from strata.engine.sources import SourceRegistry

from .models import SQLModel


class ModelGraph:
    """Directed acyclic graph of models.

    Edges run parent -> child and are exactly each model's declared references
    (``ref()`` markers plus ``-- depends_on:``). Edges to models outside this
    graph are dropped, which is how a selected subgraph treats parents that
    were built by an earlier run.
    """

    def __init__(self, models: list[SQLModel], sources: SourceRegistry | None = None) -> None:
        self.models: dict[str, SQLModel] = {m.name: m for m in models}
        self.sources = sources or SourceRegistry()
        self._parents: dict[str, set[str]] = {}
        self._children: dict[str, set[str]] = {name: set() for name in self.models}
        for m in models:
            parents = {p for p in m.parents if p in self.models}
            self._parents[m.name] = parents
            for p in parents:
                self._children[p].add(m.name)
        self._order: list[str] | None = None

    def __contains__(self, name: str) -> bool:
        return name in self.models

    def __len__(self) -> int:
        return len(self.models)

    def parents(self, name: str) -> list[str]:
        return sorted(self._parents[name])

    def children(self, name: str) -> list[str]:
        return sorted(self._children[name])

    def descendants(self, name: str) -> list[str]:
        """All models reachable downstream of ``name``, in build order."""
        return self._reachable(name, self._children)

    def ancestors(self, name: str) -> list[str]:
        return self._reachable(name, self._parents)

    def _reachable(self, name: str, edges: dict[str, set[str]]) -> list[str]:
        seen: set[str] = set()
        queue = deque([name])
        while queue:
            current = queue.popleft()
            for nxt in edges[current]:
                if nxt not in seen:
                    seen.add(nxt)
                    queue.append(nxt)
        position = {n: i for i, n in enumerate(self.order())}
        return sorted(seen, key=position.__getitem__)

    def order(self) -> list[str]:
        """Topological build order (Kahn's algorithm, ties broken by name ascending).

        Raises:
            LoadError: if the graph contains a cycle.
        """
        if self._order is not None:
            return list(self._order)

        in_degree = {name: len(parents) for name, parents in self._parents.items()}
        ready = [name for name, degree in in_degree.items() if degree == 0]
        heapq.heapify(ready)
        ordered: list[str] = []
        while ready:
            name = heapq.heappop(ready)
            ordered.append(name)
            for child in self._children[name]:
                in_degree[child] -= 1
                if in_degree[child] == 0:
                    heapq.heappush(ready, child)

        if len(ordered) < len(self.models):
            remaining = {name for name, degree in in_degree.items() if degree > 0}
            cycle = self._find_cycle(remaining)
            path = " -> ".join(cycle + cycle[:1])
            raise LoadError(f"Cycle detected in model graph: {path}", cycle=cycle)

        self._order = ordered
        return list(ordered)

    def _find_cycle(self, remaining: set[str]) -> list[str]:
        """Walk unresolved parents from the smallest stuck node until a node repeats."""
        node = min(remaining)
        path: list[str] = []
        index: dict[str, int] = {}
        while node not in index:
            index[node] = len(path)
            path.append(node)
            node = min(p for p in self._parents[node] if p in remaining)
        # Walking parents gives the cycle against edge direction; flip it and
        # rotate so the report starts at its smallest member.
        cycle = list(reversed(path[index[node]:]))
        start = cycle.index(min(cycle))
        return cycle[start:] + cycle[:start]

    def tiers(self) -> list[list[str]]:
        """Group models into tiers that have no dependencies on each other."""
        in_degree = {name: len(parents) for name, parents in self._parents.items()}
        self.order()  # raises on cycles
        tier = sorted(name for name, degree in in_degree.items() if degree == 0)
        tiers: list[list[str]] = []
        while tier:
            tiers.append(tier)
            nxt: list[str] = []
            for name in tier:
                for child in self._children[name]:
                    in_degree[child] -= 1
                    if in_degree[child] == 0:
                        nxt.append(child)
            tier = sorted(nxt)
        return tiers

    def select(
        self,
        targets: list[str],
        upstream: bool = False,
        downstream: bool = False,
    ) -> ModelGraph:
        """Return the subgraph for ``targets`` (optionally with ancestors/descendants)."""
        unknown = [t for t in targets if t not in self.models]
        if unknown:
            raise LoadError(f"Unknown model(s): {', '.join(unknown)}")
        selected: set[str] = set(targets)
        for t in targets:
            if upstream:
                selected.update(self.ancestors(t))
            if downstream:
                selected.update(self.descendants(t))
        return ModelGraph(
            [self.models[n] for n in self.order() if n in selected],
            self.sources,
        )


def build_graph(models: list[SQLModel], sources: SourceRegistry | None = None) -> ModelGraph:
    """Validate declarations and build the model graph.

    Raises:
        LoadError: on duplicate names, references to undeclared models or
            sources, or a dependency cycle.
    """
    sources = sources or SourceRegistry()
    seen: dict[str, SQLModel] = {}
    for m in models:
        if m.name in seen:
            raise LoadError(
                f"Duplicate model name '{m.name}' ({seen[m.name].path} and {m.path})"
            )
        seen[m.name] = m

    for m in models:
        for ref in m.parents:
            if ref not in seen:
                raise LoadError(f"Model '{m.name}' references undeclared model '{ref}'")
        for source_name, table_name in m.source_refs:
            if (source_name, table_name) not in sources:
                raise LoadError(
                    f"Model '{m.name}' references undeclared source "
                    f"'{source_name}.{table_name}'"
                )
        for assertion in m.assertions:
            if assertion.parent and assertion.parent not in seen:
                raise LoadError(
                    f"Model '{m.name}' assertion {assertion.expression!r} "
                    f"references undeclared model '{assertion.parent}'"
                )

    graph = ModelGraph(models, sources)
    graph.order()
    return graph
