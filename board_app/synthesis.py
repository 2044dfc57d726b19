"""Serialize a StackGraph into the document handed to the provisioning engine."""

import json
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

import attrs

from board_app.resolver import topological_order
from board_app.resources import STRUCTURES, Join, Reference, ResourceKind, StackGraph

FORMAT_VERSION = "1"


def to_primitive(value: Any) -> Any:
    if isinstance(value, Reference):
        return {"$ref": f"{value.node_id}.{value.attribute}"}
    if isinstance(value, Join):
        return {"$join": [to_primitive(part) for part in value.parts]}
    if isinstance(value, STRUCTURES):
        return {
            attribute.name: to_primitive(getattr(value, attribute.name))
            for attribute in attrs.fields(type(value))
        }
    if isinstance(value, (list, tuple)):
        return [to_primitive(item) for item in value]
    if isinstance(value, Mapping):
        return {key: to_primitive(item) for key, item in value.items()}
    return value


def synthesize(
    graph: StackGraph,
    synthesized_at: Optional[datetime] = None,
    include_metadata: bool = True,
) -> dict[str, Any]:
    ordered = topological_order(graph)
    document: dict[str, Any] = {
        "format_version": FORMAT_VERSION,
        "stack": graph.name,
        "resources": [
            {
                "id": node.id,
                "kind": node.kind.value,
                "attributes": to_primitive(node.attributes),
                "depends_on": sorted(graph.dependencies_of(node.id)),
            }
            for node in ordered
        ],
        "edges": [attrs.asdict(edge) for edge in sorted(graph.edges())],
        "outputs": {
            node.id: to_primitive(node.attributes["value"])
            for node in graph.of_kind(ResourceKind.OUTPUT)
        },
    }
    if include_metadata:
        synthesized_at = synthesized_at or datetime.now(timezone.utc)
        document["metadata"] = {"synthesized_at": synthesized_at.isoformat()}
    return document


def to_json(
    graph: StackGraph,
    synthesized_at: Optional[datetime] = None,
    include_metadata: bool = True,
) -> str:
    """Stable JSON: identical graphs give identical text once metadata is left out."""
    document = synthesize(graph, synthesized_at=synthesized_at, include_metadata=include_metadata)
    return json.dumps(document, indent=2, sort_keys=True)
