from __future__ import annotations

from typing import Iterable, Mapping


class DependencyCycleError(ValueError):
    def __init__(self, cycle: list[str]) -> None:
        self.cycle = list(cycle)
        super().__init__("Circular module dependency: " + " -> ".join(self.cycle))


def build_dependency_graph(
    depends_on: Mapping[str, Iterable[str]],
) -> dict[str, list[str]]:
    """Map module id -> sorted list of module ids it depends on."""

    return {name: sorted(set(deps)) for name, deps in depends_on.items()}


def missing_dependencies(graph: Mapping[str, Iterable[str]]) -> dict[str, list[str]]:
    """Dependencies that name modules absent from the graph."""

    known = set(graph)
    missing: dict[str, list[str]] = {}
    for name, deps in graph.items():
        absent = sorted(dep for dep in deps if dep not in known)
        if absent:
            missing[name] = absent
    return missing


def find_cycle(graph: Mapping[str, Iterable[str]]) -> list[str] | None:
    visiting: set[str] = set()
    done: set[str] = set()
    stack: list[str] = []

    def visit(node: str) -> list[str] | None:
        if node in done or node not in graph:
            return None
        if node in visiting:
            return stack[stack.index(node):] + [node]
        visiting.add(node)
        stack.append(node)
        for dep in sorted(graph[node]):
            cycle = visit(dep)
            if cycle:
                return cycle
        stack.pop()
        visiting.discard(node)
        done.add(node)
        return None

    for name in sorted(graph):
        cycle = visit(name)
        if cycle:
            return cycle
    return None


def topological_order(graph: Mapping[str, Iterable[str]]) -> list[str]:
    """Dependencies first; ties broken by name. Unknown deps are ignored."""

    cycle = find_cycle(graph)
    if cycle:
        raise DependencyCycleError(cycle)
    remaining = {name: {dep for dep in deps if dep in graph} for name, deps in graph.items()}
    order: list[str] = []
    while remaining:
        ready = sorted(name for name, deps in remaining.items() if not deps)
        for name in ready:
            order.append(name)
            del remaining[name]
        for deps in remaining.values():
            deps.difference_update(ready)
    return order
