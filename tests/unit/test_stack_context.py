from random import Random

import pytest

from common.errors import ValidationError
from common.identity import ADJECTIVES, ANIMALS, IdentityRegistry, IdentityToken
from common.stack_context import StackContext, allocate

TOKEN = IdentityToken("brave-otter")


# ------------------- Naming -------------------


@pytest.mark.parametrize(
    "stack_name,role,token,expected",
    [
        ("job-board", "db-group", None, "job-board-db-group"),
        ("job-board", "artifacts", TOKEN, "job-board-artifacts-brave-otter"),
        ("Job-Board", "Lambda", TOKEN, "job-board-lambda-brave-otter"),
    ],
)
def test_allocate(stack_name, role, token, expected):
    assert allocate(stack_name, role, token) == expected


@pytest.mark.parametrize("stack_name", ["", "1board", "job board", "job_board", None])
def test_allocate_rejects_invalid_stack_names(stack_name):
    with pytest.raises(ValidationError) as error:
        allocate(stack_name, "db")
    assert error.value.field == "stack_name"


def test_allocate_rejects_empty_role():
    with pytest.raises(ValidationError):
        allocate("job-board", "")


def test_context_names_are_reproducible():
    first = StackContext(stack_name="job-board", identity_token=TOKEN)
    second = StackContext(stack_name="job-board", identity_token=IdentityToken("brave-otter"))
    for role in ("db", "lambda", "artifacts"):
        assert first.build_resource_name(role) == second.build_resource_name(role)
        assert first.build_resource_name(role, globally_unique=True) == second.build_resource_name(
            role, globally_unique=True
        )


@pytest.mark.parametrize(
    "node_id,expected",
    [
        ("db-security-group", "DbSecurityGroup"),
        ("subnet-1", "Subnet1"),
        ("vpc", "Vpc"),
        ("apigw-lambda", "ApigwLambda"),
    ],
)
def test_build_resource_id(node_id, expected):
    assert StackContext.build_resource_id(node_id) == expected


def test_availability_zones_follow_region():
    context = StackContext(stack_name="job-board", identity_token=TOKEN, region="us-east-2")
    assert context.availability_zones() == ("us-east-2a", "us-east-2b", "us-east-2c")


# ------------------- Identity tokens -------------------


def test_generated_token_is_pronounceable():
    token = IdentityToken.generate(Random(3))
    adjective, animal = token.value.split("-")
    assert adjective in ADJECTIVES
    assert animal in ANIMALS


@pytest.mark.parametrize("value", ["", "BRAVE-OTTER", "brave_otter", "brave-otter-2"])
def test_malformed_token_is_rejected(value):
    with pytest.raises(ValidationError):
        IdentityToken(value)


def test_registry_memoizes_per_stack():
    registry = IdentityRegistry(Random(11))
    first = registry.token_for("alpha")
    assert registry.token_for("alpha") == first
    assert registry.token_for("alpha", persisted=first) == first


def test_registry_keeps_persisted_token():
    registry = IdentityRegistry(Random(11))
    assert registry.token_for("alpha", persisted=TOKEN) == TOKEN


def test_registry_refuses_to_swap_an_issued_token():
    registry = IdentityRegistry(Random(11))
    registry.token_for("alpha", persisted=TOKEN)
    with pytest.raises(ValidationError):
        registry.token_for("alpha", persisted=IdentityToken("calm-panda"))


class _RepeatingRandom(Random):
    """Draws the same words twice before moving on."""

    def __init__(self) -> None:
        super().__init__(0)
        self._choices = iter(["bold", "yak", "bold", "yak", "calm", "seal"])

    def choice(self, seq):
        return next(self._choices)


def test_registry_never_issues_the_same_token_twice():
    registry = IdentityRegistry(_RepeatingRandom())
    alpha = registry.token_for("alpha")
    beta = registry.token_for("beta")
    assert alpha == IdentityToken("bold-yak")
    assert beta == IdentityToken("calm-seal")
    assert registry.issued == {"alpha": alpha, "beta": beta}


def test_registry_rejects_a_persisted_token_held_by_another_stack():
    registry = IdentityRegistry(Random(11))
    fresh = registry.token_for("alpha")
    with pytest.raises(ValidationError) as error:
        registry.token_for("beta", persisted=fresh)
    assert error.value.resource_id == "beta"
    assert error.value.field == "identity_token"
    assert "beta" not in registry.issued


def test_reserved_tokens_are_never_drawn_fresh():
    registry = IdentityRegistry(_RepeatingRandom())
    registry.reserve({"beta": IdentityToken("bold-yak"), "gamma": None})
    alpha = registry.token_for("alpha")
    assert alpha == IdentityToken("calm-seal")
    assert registry.token_for("beta", persisted=IdentityToken("bold-yak")) == IdentityToken("bold-yak")
    assert "gamma" not in registry.issued


def test_reserve_rejects_two_stacks_persisting_one_token():
    registry = IdentityRegistry(Random(11))
    with pytest.raises(ValidationError) as error:
        registry.reserve({"alpha": TOKEN, "beta": TOKEN})
    assert error.value.resource_id == "beta"


def test_token_space_is_large():
    assert len(set(ADJECTIVES)) * len(set(ANIMALS)) > 40_000
    assert all(word.isalpha() and word.islower() for word in ADJECTIVES + ANIMALS)
