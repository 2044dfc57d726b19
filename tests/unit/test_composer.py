from pathlib import Path
from random import Random

import pytest

import common.constants as constants
from common.errors import PackagingError, ValidationError
from common.identity import IdentityRegistry, IdentityToken
from board_app.resources import Edge, Join, Reference, ResourceKind, StackGraph
from board_app.state import StackState
from board_app.synthesis import to_json
from stack_test_helpers import (
    CONFIG,
    STACK_NAME,
    ReferenceTestCase,
    build_dir,
    compose_test_graph,
    graph,
    staging_dir,
)


# ------------------- Test Cases -------------------

REFERENCE_TEST_CASES = [
    ReferenceTestCase(
        id="subnet_in_vpc",
        source="subnet-1",
        attribute="vpc_id",
        target="vpc",
        output_attribute="id",
    ),
    ReferenceTestCase(
        id="db_ingress_from_function_group",
        source="db-security-group",
        attribute="ingress.0.source_security_group",
        target="lambda-security-group",
        output_attribute="id",
    ),
    ReferenceTestCase(
        id="db_password_from_secret",
        source="db",
        attribute="password",
        target="db-password",
        output_attribute="result",
    ),
    ReferenceTestCase(
        id="function_code_from_archive",
        source="board-lambda",
        attribute="s3_key",
        target="lambda-archive",
        output_attribute="key",
    ),
    ReferenceTestCase(
        id="function_env_db_url",
        source="board-lambda",
        attribute="environment.DB_URL",
        target="db",
        output_attribute="address",
    ),
    ReferenceTestCase(
        id="function_env_db_password",
        source="board-lambda",
        attribute="environment.DB_PASSWORD",
        target="db-password",
        output_attribute="result",
    ),
    ReferenceTestCase(
        id="policy_attached_to_role",
        source="lambda-vpc-access-policy",
        attribute="role",
        target="lambda-exec",
        output_attribute="name",
    ),
    ReferenceTestCase(
        id="permission_scoped_to_api",
        source="apigw-lambda",
        attribute="source_arn.0",
        target="api-gw",
        output_attribute="execution_arn",
    ),
    ReferenceTestCase(
        id="url_output",
        source="url",
        attribute="value",
        target="api-gw",
        output_attribute="api_endpoint",
    ),
]


# ------------------- Composition -------------------


def test_composed_stack_has_expected_resources(graph: StackGraph):
    counts = {kind: len(graph.of_kind(kind)) for kind in ResourceKind}
    assert counts == {
        ResourceKind.NETWORK: 1,
        ResourceKind.SUBNET: 3,
        ResourceKind.DB_SUBNET_GROUP: 1,
        ResourceKind.DB_PARAMETER_GROUP: 1,
        ResourceKind.SECRET: 1,
        ResourceKind.SECURITY_GROUP: 2,
        ResourceKind.DB_INSTANCE: 1,
        ResourceKind.BUCKET: 1,
        ResourceKind.ARTIFACT: 1,
        ResourceKind.ROLE: 1,
        ResourceKind.POLICY_ATTACHMENT: 2,
        ResourceKind.COMPUTE_FUNCTION: 1,
        ResourceKind.GATEWAY_API: 1,
        ResourceKind.PERMISSION: 1,
        ResourceKind.OUTPUT: 1,
    }
    assert len(graph) == 19


@pytest.mark.parametrize("case", REFERENCE_TEST_CASES, ids=lambda case: case.id)
def test_expected_references(graph: StackGraph, case: ReferenceTestCase):
    assert Edge(case.source, case.attribute, case.target, case.output_attribute) in graph.edges()


def test_names_are_scoped_to_the_stack(graph: StackGraph):
    token = graph.state.identity_token
    assert graph.get("db-subnet-group").attributes["name"] == f"{STACK_NAME}-db-group"
    assert graph.get("db").attributes["identifier"] == f"{STACK_NAME}-db"
    assert graph.get("bucket").attributes["bucket_name"] == f"{STACK_NAME}-artifacts-{token}"
    assert graph.get("board-lambda").attributes["function_name"] == f"{STACK_NAME}-lambda-{token}"
    assert graph.get("lambda-exec").attributes["name"] == f"{STACK_NAME}-lambda-exec-{token}"


def test_subnets_span_three_zones(graph: StackGraph):
    zones = [node.attributes["availability_zone"] for node in graph.of_kind(ResourceKind.SUBNET)]
    assert zones == [f"{constants.DEFAULT_REGION}{suffix}" for suffix in "abc"]


def test_database_accepts_traffic_only_from_function_group(graph: StackGraph):
    (rule,) = graph.get("db-security-group").attributes["ingress"]
    assert rule.protocol == "tcp"
    assert (rule.from_port, rule.to_port) == (constants.DB_PORT, constants.DB_PORT)
    assert rule.source_security_group == Reference("lambda-security-group", "id")
    assert rule.cidr_blocks == ()
    assert graph.get("lambda-security-group").attributes["ingress"] == []


def test_function_environment_is_wired_by_reference(graph: StackGraph):
    environment = graph.get("board-lambda").attributes["environment"]
    assert environment["DB_URL"] == Reference("db", "address")
    assert environment["DB_PORT"] == Reference("db", "port")
    assert environment["DB_PASSWORD"] == Reference("db-password", "result")
    assert environment["STAGE"] == CONFIG["stageName"]


def test_database_password_is_the_generated_secret(graph: StackGraph):
    assert graph.get("db").attributes["password"] == graph.get("board-lambda").attributes[
        "environment"
    ]["DB_PASSWORD"]
    assert graph.holds_unrecoverable_secret


def test_artifact_key_carries_version_and_hash(graph: StackGraph):
    archive = graph.get("lambda-archive").attributes
    assert archive["key"] == f"{CONFIG['version']}/{archive['content_hash']}.zip"
    assert archive["version"] == CONFIG["version"]


def test_invoke_permission_is_scoped_to_the_api(graph: StackGraph):
    source_arn = graph.get("apigw-lambda").attributes["source_arn"]
    assert isinstance(source_arn, Join)
    assert source_arn.placeholder == "${api-gw.execution_arn}/*/*"


def test_outputs_are_resolved(graph: StackGraph):
    assert graph.get("url").outputs == {}
    assert graph.get("api-gw").outputs["api_endpoint"] == "${api-gw.api_endpoint}"


# ------------------- Reproducibility -------------------


def test_resynthesis_with_persisted_state_is_identical(
    graph: StackGraph, build_dir: Path, staging_dir: Path
):
    again = compose_test_graph(build_dir.parent, staging_dir, state=graph.state, seed=99)
    assert again.state == graph.state
    assert to_json(again, include_metadata=False) == to_json(graph, include_metadata=False)


def test_state_round_trips_through_context(graph: StackGraph, build_dir: Path, staging_dir: Path):
    restored = StackState.from_dict(STACK_NAME, graph.state.to_dict())
    again = compose_test_graph(build_dir.parent, staging_dir, state=restored, seed=99)
    assert to_json(again, include_metadata=False) == to_json(graph, include_metadata=False)


def test_fresh_state_records_token_and_secret(graph: StackGraph):
    state = graph.state
    assert isinstance(state.identity_token, IdentityToken)
    assert set(state.secrets) == {"db-password"}
    assert state.secrets["db-password"].handle_id == graph.get("db-password").attributes["handle_id"]


def test_stacks_in_one_run_get_distinct_identities(build_dir: Path, staging_dir: Path):
    registry = IdentityRegistry(Random(1))
    alpha = compose_test_graph(build_dir.parent, staging_dir, "alpha", registry=registry, seed=1)
    beta = compose_test_graph(build_dir.parent, staging_dir, "beta", registry=registry, seed=2)

    assert alpha.state.identity_token != beta.state.identity_token
    assert alpha.state.secrets["db-password"] != beta.state.secrets["db-password"]
    alpha_names = {node.attributes.get("name") for node in alpha} - {None}
    beta_names = {node.attributes.get("name") for node in beta} - {None}
    assert alpha_names.isdisjoint(beta_names)


# ------------------- Failures -------------------


def test_missing_handler_fails_before_composing(build_dir: Path, staging_dir: Path):
    config = {key: value for key, value in CONFIG.items() if key != "handler"}
    with pytest.raises(ValidationError) as error:
        compose_test_graph(build_dir.parent, staging_dir, config=config)
    assert error.value.resource_id == "board-lambda"
    assert error.value.field == "handler"
    assert not staging_dir.exists()


def test_missing_build_directory_fails(tmp_path: Path, staging_dir: Path):
    with pytest.raises(PackagingError):
        compose_test_graph(tmp_path, staging_dir)


def test_state_of_another_stack_is_rejected(graph: StackGraph, build_dir: Path, staging_dir: Path):
    with pytest.raises(ValidationError) as error:
        compose_test_graph(build_dir.parent, staging_dir, "other", state=graph.state)
    assert error.value.field == "state"


def test_partial_state_reports_the_generated_secret(
    graph: StackGraph, build_dir: Path, staging_dir: Path
):
    token_only = StackState(stack_name=STACK_NAME, identity_token=graph.state.identity_token)
    assert not token_only.is_fresh

    composed = compose_test_graph(build_dir.parent, staging_dir, state=token_only, seed=42)
    assert composed.state != token_only
    assert set(composed.state.secrets) == {"db-password"}

    again = compose_test_graph(build_dir.parent, staging_dir, state=composed.state, seed=43)
    assert again.state == composed.state
    assert to_json(again, include_metadata=False) == to_json(composed, include_metadata=False)


def test_complete_state_is_left_unchanged(graph: StackGraph, build_dir: Path, staging_dir: Path):
    again = compose_test_graph(build_dir.parent, staging_dir, state=graph.state, seed=5)
    assert again.state == graph.state
