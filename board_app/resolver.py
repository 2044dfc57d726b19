"""Turn resource references into a deterministic creation order."""

import heapq
from collections import defaultdict
from typing import Optional

from common.errors import CycleError, ValidationError
from board_app.resources import (
    OUTPUT_ATTRIBUTES,
    Join,
    Reference,
    ResourceNode,
    StackGraph,
    check_reference_kind,
)


def _dependency_map(graph: StackGraph) -> dict[str, list[str]]:
    dependencies: dict[str, list[str]] = {}
    for node in graph:
        targets: list[str] = []
        for path, reference in node.references():
            if reference.node_id not in graph:
                raise ValidationError(
                    f"Reference to resource '{reference.node_id}' which is not "
                    f"part of stack {graph.name}",
                    resource_id=node.id,
                    field=path,
                )
            check_reference_kind(node, path, graph.get(reference.node_id))
            if reference.node_id not in targets:
                targets.append(reference.node_id)
        dependencies[node.id] = targets
    return dependencies


def _find_cycle(remaining: set[str], dependencies: dict[str, list[str]], order: list[str]) -> list[str]:
    # Every remaining node has an unresolved dependency, so following them
    # from any start must come back to a node already on the path.
    start = min(remaining, key=order.index)
    path: list[str] = []
    positions: dict[str, int] = {}
    current = start
    while current not in positions:
        positions[current] = len(path)
        path.append(current)
        current = next(dep for dep in dependencies[current] if dep in remaining)
    cycle = path[positions[current]:]
    return cycle + [current]


def topological_order(graph: StackGraph) -> list[ResourceNode]:
    """Order nodes so every node follows the nodes it references.

    Kahn's algorithm; among nodes that are ready at the same time the one
    declared first wins, so the order is stable across runs.
    """
    dependencies = _dependency_map(graph)
    declaration = [node.id for node in graph]
    index = {node_id: position for position, node_id in enumerate(declaration)}

    indegree = {node_id: len(targets) for node_id, targets in dependencies.items()}
    dependents: dict[str, list[str]] = defaultdict(list)
    for node_id, targets in dependencies.items():
        for target in targets:
            dependents[target].append(node_id)

    ready = [index[node_id] for node_id, count in indegree.items() if count == 0]
    heapq.heapify(ready)
    ordered: list[str] = []
    while ready:
        current = declaration[heapq.heappop(ready)]
        ordered.append(current)
        for dependent in dependents[current]:
            indegree[dependent] -= 1
            if indegree[dependent] == 0:
                heapq.heappush(ready, index[dependent])

    if len(ordered) != len(declaration):
        remaining = set(declaration) - set(ordered)
        raise CycleError(_find_cycle(remaining, dependencies, declaration))
    return [graph.get(node_id) for node_id in ordered]


def _static_output(graph: StackGraph, node: ResourceNode, output: str, source: Optional[str]):
    if source is None:
        return Reference(node.id, output).placeholder
    value = node.attributes.get(source)
    if isinstance(value, Reference):
        return graph.get(value.node_id).outputs.get(value.attribute, value.placeholder)
    if isinstance(value, Join):
        return value.placeholder
    return value


def resolve(graph: StackGraph) -> list[ResourceNode]:
    """Order the graph and populate every node's outputs.

    Outputs known at synthesis time carry their literal value, the rest a
    ``${node.attribute}`` placeholder the provisioning engine fills in.
    """
    ordered = topological_order(graph)
    for node in ordered:
        node.outputs = {
            output: _static_output(graph, node, output, source)
            for output, source in OUTPUT_ATTRIBUTES[node.kind].items()
        }
    return ordered
