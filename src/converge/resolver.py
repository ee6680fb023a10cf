"""
Copyright 2025 Inmanta

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at

    http://www.apache.org/licenses/LICENSE-2.0

Unless required by applicable law or agreed to in writing, software
distributed under the License is distributed on an "AS IS" BASIS,
WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
See the License for the specific language governing permissions and
limitations under the License.

Contact: code@inmanta.com
"""

import heapq
import logging
from collections.abc import Collection, Hashable, Mapping, Set
from typing import TypeVar

LOGGER = logging.getLogger(__name__)

N = TypeVar("N", bound=Hashable)


class CycleError(Exception):
    """
    The requires relation contains one or more cycles, so no order exists.

    :param cycles: The members of every cycle, each sorted. Cycles are sorted on their first member.
    """

    def __init__(self, cycles: Collection[Collection[object]]) -> None:
        self.cycles: list[list[str]] = sorted(sorted(str(member) for member in cycle) for cycle in cycles)
        super().__init__(self.format())

    def format(self) -> str:
        descriptions = []
        for cycle in self.cycles:
            if len(cycle) == 1:
                descriptions.append(f"{cycle[0]} depends on itself")
            else:
                descriptions.append(" -> ".join(cycle + [cycle[0]]))
        noun = "cycle" if len(self.cycles) == 1 else "cycles"
        return f"Dependency {noun} detected: " + "; ".join(descriptions)


def _normalize(requires: Mapping[N, Set[N]]) -> dict[N, set[N]]:
    """
    Every node mentioned as a dependency becomes a node of its own
    """
    result: dict[N, set[N]] = {node: set(deps) for node, deps in requires.items()}
    for deps in requires.values():
        for dep in deps:
            result.setdefault(dep, set())
    return result


def find_cycles(requires: Mapping[N, Set[N]]) -> list[list[N]]:
    """
    Find all cycles: every strongly connected component with more than one member and every node that requires itself.

    Iterative version of Tarjan's algorithm, nodes are visited in sorted order so the result is stable.
    """
    graph = _normalize(requires)
    index: dict[N, int] = {}
    lowlink: dict[N, int] = {}
    on_stack: set[N] = set()
    stack: list[N] = []
    cycles: list[list[N]] = []
    counter = 0

    for root in sorted(graph, key=str):
        if root in index:
            continue
        work: list[tuple[N, list[N]]] = [(root, sorted(graph[root], key=str))]
        index[root] = lowlink[root] = counter
        counter += 1
        stack.append(root)
        on_stack.add(root)
        while work:
            node, todo = work[-1]
            if todo:
                nxt = todo.pop(0)
                if nxt not in index:
                    index[nxt] = lowlink[nxt] = counter
                    counter += 1
                    stack.append(nxt)
                    on_stack.add(nxt)
                    work.append((nxt, sorted(graph[nxt], key=str)))
                elif nxt in on_stack:
                    lowlink[node] = min(lowlink[node], index[nxt])
                continue
            work.pop()
            if work:
                parent = work[-1][0]
                lowlink[parent] = min(lowlink[parent], lowlink[node])
            if lowlink[node] == index[node]:
                component: list[N] = []
                while True:
                    member = stack.pop()
                    on_stack.discard(member)
                    component.append(member)
                    if member == node:
                        break
                if len(component) > 1 or node in graph[node]:
                    cycles.append(sorted(component, key=str))
    return sorted(cycles, key=lambda cycle: str(cycle[0]))


def creation_order(requires: Mapping[N, Set[N]]) -> list[N]:
    """
    Creates a linear sequence in which every node comes after all nodes it requires. The same graph yields the same
    solution, independent of the order given to this function: of all nodes that are ready, the smallest one comes first.

    :param requires: For each node, the nodes it requires
    :raises CycleError: The graph has one or more cycles
    """
    graph = _normalize(requires)
    waiting: dict[N, int] = {node: len(deps) for node, deps in graph.items()}
    dependents: dict[N, list[N]] = {node: [] for node in graph}
    for node, deps in graph.items():
        for dep in deps:
            dependents[dep].append(node)

    ready: list[tuple[str, N]] = [(str(node), node) for node, count in waiting.items() if count == 0]
    heapq.heapify(ready)
    out: list[N] = []
    while ready:
        _, node = heapq.heappop(ready)
        out.append(node)
        for dependent in dependents[node]:
            waiting[dependent] -= 1
            if waiting[dependent] == 0:
                heapq.heappush(ready, (str(dependent), dependent))

    if len(out) != len(graph):
        raise CycleError(find_cycles(graph))
    return out


def reverse(requires: Mapping[N, Set[N]]) -> dict[N, set[N]]:
    """
    Turn a requires mapping into a provides mapping
    """
    result: dict[N, set[N]] = {node: set() for node in _normalize(requires)}
    for node, deps in requires.items():
        for dep in deps:
            result[dep].add(node)
    return result


def destruction_order(requires: Mapping[N, Set[N]]) -> list[N]:
    """
    Creates a linear sequence in which every node comes after all nodes that require it.

    :raises CycleError: The graph has one or more cycles
    """
    return creation_order(reverse(requires))


def generations(requires: Mapping[N, Set[N]]) -> list[list[N]]:
    """
    Group the nodes in waves: a node is in the first wave after all of the waves that contain a node it requires.
    Nodes within a wave are independent of each other and sorted.

    :raises CycleError: The graph has one or more cycles
    """
    graph = _normalize(requires)
    level: dict[N, int] = {}
    for node in creation_order(graph):
        level[node] = max((level[dep] + 1 for dep in graph[node]), default=0)
    waves: list[list[N]] = [[] for _ in range(max(level.values(), default=-1) + 1)]
    for node in sorted(level, key=str):
        waves[level[node]].append(node)
    return waves


def check_acyclic(requires: Mapping[N, Set[N]]) -> None:
    """
    :raises CycleError: The graph has one or more cycles
    """
    cycles = find_cycles(requires)
    if cycles:
        raise CycleError(cycles)
