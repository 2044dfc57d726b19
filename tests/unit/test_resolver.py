import pytest

from common.errors import CycleError, ValidationError
from board_app.resolver import resolve, topological_order
from board_app.resources import Reference, ResourceKind, ResourceNode, StackGraph
from stack_test_helpers import build_dir, graph, staging_dir


def _output(node_id: str, value) -> ResourceNode:
    return ResourceNode(id=node_id, kind=ResourceKind.OUTPUT, attributes={"value": value})


def _network(node_id: str = "vpc") -> ResourceNode:
    return ResourceNode(id=node_id, kind=ResourceKind.NETWORK, attributes={"cidr_block": "10.0.0.0/16"})


def _subnet(node_id: str, vpc: str = "vpc") -> ResourceNode:
    return ResourceNode(
        id=node_id,
        kind=ResourceKind.SUBNET,
        attributes={
            "vpc_id": Reference(vpc, "id"),
            "cidr_block": "10.0.0.0/24",
            "availability_zone": "eu-west-1a",
        },
    )


def test_nodes_follow_the_nodes_they_reference(graph: StackGraph):
    ordered = [node.id for node in topological_order(graph)]
    position = {node_id: index for index, node_id in enumerate(ordered)}
    assert sorted(ordered) == sorted(node.id for node in graph)
    for edge in graph.edges():
        assert position[edge.target] < position[edge.source], edge


def test_declaration_order_breaks_ties():
    hand_built = StackGraph.from_nodes(
        "alpha",
        [
            _subnet("subnet-b"),
            _subnet("subnet-a"),
            _network(),
            _output("first", "literal"),
        ],
    )
    ordered = [node.id for node in topological_order(hand_built)]
    assert ordered == ["vpc", "subnet-b", "subnet-a", "first"]


def test_order_is_stable_across_runs(graph: StackGraph):
    first = [node.id for node in topological_order(graph)]
    second = [node.id for node in topological_order(graph)]
    assert first == second


def test_cycle_is_reported_with_its_members():
    hand_built = StackGraph.from_nodes(
        "alpha",
        [
            _output("a", Reference("c", "value")),
            _output("b", Reference("a", "value")),
            _output("c", Reference("b", "value")),
            _output("d", "literal"),
        ],
    )
    with pytest.raises(CycleError) as error:
        topological_order(hand_built)
    cycle = error.value.cycle
    assert cycle[0] == cycle[-1]
    assert set(cycle) == {"a", "b", "c"}
    assert "a" in str(error.value)


def test_cycle_downstream_nodes_are_not_blamed():
    hand_built = StackGraph.from_nodes(
        "alpha",
        [
            _output("tail", Reference("a", "value")),
            _output("a", Reference("b", "value")),
            _output("b", Reference("a", "value")),
        ],
    )
    with pytest.raises(CycleError) as error:
        topological_order(hand_built)
    assert set(error.value.cycle) == {"a", "b"}


def test_self_reference_is_a_cycle():
    hand_built = StackGraph.from_nodes("alpha", [_output("loop", Reference("loop", "value"))])
    with pytest.raises(CycleError) as error:
        topological_order(hand_built)
    assert error.value.cycle == ("loop", "loop")


def test_reference_outside_the_stack_is_a_validation_error():
    hand_built = StackGraph.from_nodes("alpha", [_subnet("subnet-1", vpc="missing")])
    with pytest.raises(ValidationError) as error:
        topological_order(hand_built)
    assert error.value.resource_id == "subnet-1"
    assert error.value.field == "vpc_id"


def test_outputs_are_empty_until_resolved():
    hand_built = StackGraph.from_nodes("alpha", [_network(), _subnet("subnet-1")])
    assert all(node.outputs == {} for node in hand_built)
    resolve(hand_built)
    assert hand_built.get("vpc").outputs == {"id": "${vpc.id}"}
    assert hand_built.get("subnet-1").outputs == {"id": "${subnet-1.id}"}


def test_static_outputs_carry_literal_values(graph: StackGraph):
    bucket = graph.get("bucket")
    archive = graph.get("lambda-archive")
    db = graph.get("db")
    assert bucket.outputs["bucket"] == bucket.attributes["bucket_name"]
    assert bucket.outputs["arn"] == "${bucket.arn}"
    assert archive.outputs["key"] == archive.attributes["key"]
    assert db.outputs["address"] == "${db.address}"
