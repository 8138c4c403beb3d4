"""
Dependency Graph Builder.

Edges come from two places: ``${kind.name.attribute}`` references inside
attribute values, and explicit ``depends_on`` entries. The graph yields a
topological order where every resource follows everything it depends on.
Independent resources keep their declaration order, so identical input
always yields an identical order.
"""

import heapq
from typing import Dict, Iterable, List, Mapping, Set

from lakeform.errors import CycleError, ParseError, UnresolvedReferenceError
from lakeform.loader.interpolation import expressions, parse_reference, references
from lakeform.models.declaration import ResourceDeclaration


class DependencyGraph:
    """Directed graph of addresses; an edge points from a node to its dependency."""

    def __init__(self, rank: Mapping[str, int], edges: Mapping[str, Iterable[str]]):
        self._rank: Dict[str, int] = dict(rank)
        self._deps: Dict[str, Set[str]] = {node: set() for node in self._rank}
        self._dependents: Dict[str, Set[str]] = {node: set() for node in self._rank}
        for node, deps in edges.items():
            for dep in deps:
                # Edges to nodes outside the graph are already satisfied
                if dep not in self._rank:
                    continue
                self._deps[node].add(dep)
                self._dependents[dep].add(node)

    @classmethod
    def from_declarations(cls, resources: List[ResourceDeclaration]) -> "DependencyGraph":
        """Build the graph, failing on references to undeclared resources."""
        rank = {r.address: r.index for r in resources}
        edges: Dict[str, Set[str]] = {}
        for resource in resources:
            for expression in expressions(resource.attributes):
                if expression.startswith("pending."):
                    continue
                try:
                    parse_reference(expression)
                except ValueError as e:
                    raise ParseError(
                        f"cannot interpolate '${{{expression}}}'", resource.address
                    ) from e

            deps: Set[str] = set()
            for ref in references(resource.attributes):
                if ref.target not in rank:
                    raise UnresolvedReferenceError(resource.address, ref.target)
                deps.add(ref.target)
            for target in resource.depends_on:
                if target not in rank:
                    raise UnresolvedReferenceError(resource.address, target)
                deps.add(target)
            edges[resource.address] = deps
        return cls(rank, edges)

    def __contains__(self, node: str) -> bool:
        return node in self._rank

    def dependencies(self, node: str) -> List[str]:
        """Direct dependencies, in rank order."""
        return sorted(self._deps[node], key=self._key)

    def dependents(self, node: str) -> List[str]:
        """Direct dependents, in rank order."""
        return sorted(self._dependents[node], key=self._key)

    def order(self) -> List[str]:
        """
        Topological order (dependencies first), ties broken by rank.
        Raises CycleError naming every node on a cycle.
        """
        remaining = {node: len(deps) for node, deps in self._deps.items()}
        ready = [(self._key(n), n) for n, count in remaining.items() if count == 0]
        heapq.heapify(ready)

        ordered: List[str] = []
        while ready:
            _, node = heapq.heappop(ready)
            ordered.append(node)
            for dependent in self._dependents[node]:
                remaining[dependent] -= 1
                if remaining[dependent] == 0:
                    heapq.heappush(ready, (self._key(dependent), dependent))

        if len(ordered) != len(self._rank):
            raise CycleError(self.cycle_members())
        return ordered

    def reverse_order(self) -> List[str]:
        """Dependents before their dependencies (deletion order)."""
        return list(reversed(self.order()))

    def cycle_members(self) -> List[str]:
        """Nodes that sit on at least one cycle (Tarjan's SCC)."""
        index_of: Dict[str, int] = {}
        low: Dict[str, int] = {}
        on_stack: Set[str] = set()
        stack: List[str] = []
        members: Set[str] = set()
        counter = 0

        for start in sorted(self._rank, key=self._key):
            if start in index_of:
                continue
            # Iterative DFS; each frame is (node, iterator over its dependencies)
            index_of[start] = low[start] = counter
            counter += 1
            stack.append(start)
            on_stack.add(start)
            frames = [(start, iter(self.dependencies(start)))]
            while frames:
                node, children = frames[-1]
                advanced = False
                for child in children:
                    if child not in index_of:
                        index_of[child] = low[child] = counter
                        counter += 1
                        stack.append(child)
                        on_stack.add(child)
                        frames.append((child, iter(self.dependencies(child))))
                        advanced = True
                        break
                    if child in on_stack:
                        low[node] = min(low[node], index_of[child])
                if advanced:
                    continue
                frames.pop()
                if frames:
                    parent = frames[-1][0]
                    low[parent] = min(low[parent], low[node])
                if low[node] == index_of[node]:
                    component = []
                    while True:
                        top = stack.pop()
                        on_stack.discard(top)
                        component.append(top)
                        if top == node:
                            break
                    if len(component) > 1 or node in self._deps[node]:
                        members.update(component)
        return sorted(members, key=self._key)

    def _key(self, node: str):
        return (self._rank.get(node, 0), node)
