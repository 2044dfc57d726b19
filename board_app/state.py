from typing import Any, Mapping, Optional

from attrs import define, field, evolve
from attrs.validators import instance_of, optional

from common.errors import ValidationError
from common.identity import IdentityToken
from board_app.credentials import SecretHandle
from board_app.resources import SecretPolicy


@define(slots=True, frozen=True)
class StackState:
    """Values the provisioning engine must persist between syntheses.

    Losing either the identity token or a secret handle renames resources or
    hands dependents a credential the provisioned database does not know.
    """

    stack_name: str = field(validator=instance_of(str))
    identity_token: Optional[IdentityToken] = field(
        default=None, validator=optional(instance_of(IdentityToken))
    )
    secrets: Mapping[str, SecretHandle] = field(factory=dict, converter=dict)

    @property
    def is_fresh(self) -> bool:
        return self.identity_token is None and not self.secrets

    def with_identity(self, token: IdentityToken) -> "StackState":
        return evolve(self, identity_token=token)

    def with_secrets(self, handles: Mapping[str, SecretHandle]) -> "StackState":
        return evolve(self, secrets={**self.secrets, **handles})

    def to_dict(self) -> dict[str, Any]:
        return {
            "identity_token": str(self.identity_token) if self.identity_token else None,
            "secrets": {
                role: {
                    "handle_id": handle.handle_id,
                    "policy": {
                        "length": handle.policy.length,
                        "special": handle.policy.special,
                        "override_special": handle.policy.override_special,
                    },
                }
                for role, handle in sorted(self.secrets.items())
            },
        }

    @classmethod
    def from_dict(cls, stack_name: str, values: Optional[Mapping[str, Any]]) -> "StackState":
        values = values or {}
        token = values.get("identity_token")
        try:
            identity_token = IdentityToken(token) if token else None
        except ValidationError as e:
            raise ValidationError(
                f"Malformed persisted identity token: {token!r}",
                resource_id=stack_name,
                field="identity_token",
            ) from e
        handles = {}
        for role, entry in (values.get("secrets") or {}).items():
            try:
                policy = SecretPolicy(**entry["policy"])
                handles[role] = SecretHandle(role=role, handle_id=entry["handle_id"], policy=policy)
            except (KeyError, TypeError, ValidationError) as e:
                raise ValidationError(
                    f"Malformed persisted secret handle: {e}",
                    resource_id=role,
                    field="secrets",
                ) from e
        return cls(
            stack_name=stack_name,
            identity_token=identity_token,
            secrets=handles,
        )
