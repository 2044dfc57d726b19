import re
from typing import Optional

from attrs import define, field
from attrs.validators import instance_of

import common.constants as constants
from common.errors import ValidationError
from common.identity import IdentityToken

STACK_NAME_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9-]*$")


def validate_stack_name(stack_name: str) -> str:
    if not isinstance(stack_name, str) or not STACK_NAME_PATTERN.match(stack_name):
        raise ValidationError(
            "Stack name must start with a letter and contain only letters, "
            f"digits and hyphens, got {stack_name!r}",
            resource_id=str(stack_name),
            field="stack_name",
        )
    return stack_name


def allocate(
    stack_name: str,
    resource_role: str,
    identity_token: Optional[IdentityToken] = None,
) -> str:
    """Allocate a resource name.

    Examples:
        - Unique within the stack: job-board-db-group
        - Globally unique: job-board-artifacts-brave-otter
    """
    validate_stack_name(stack_name)
    if not resource_role:
        raise ValidationError(
            "Resource role must not be empty", resource_id=stack_name, field="role"
        )
    if identity_token is not None:
        return f"{stack_name}-{resource_role}-{identity_token}".lower()
    return f"{stack_name}-{resource_role}".lower()


@define(slots=True, frozen=True)
class StackContext:
    stack_name: str = field(validator=instance_of(str))
    identity_token: IdentityToken = field(validator=instance_of(IdentityToken))
    region: str = field(
        default=constants.DEFAULT_REGION,
        metadata={"description": "Region the availability zones are derived from"},
    )
    service: str = field(default=constants.SERVICE_NAME, init=False)

    def __attrs_post_init__(self) -> None:
        validate_stack_name(self.stack_name)

    # ---------- naming ----------
    def build_resource_name(self, resource_role: str, globally_unique: bool = False) -> str:
        """Build resource name, suffixed with the identity token when it must be
        unique beyond this stack.

        Examples:
            - build_resource_name("db"): job-board-db
            - build_resource_name("lambda", globally_unique=True): job-board-lambda-brave-otter
        """
        token = self.identity_token if globally_unique else None
        return allocate(self.stack_name, resource_role, token)

    @staticmethod
    def build_resource_id(node_id: str) -> str:
        """Build the CloudFormation logical ID for a node.

        Examples:
            - db-security-group: DbSecurityGroup
            - subnet-1: Subnet1
        """
        return "".join(part.capitalize() for part in re.split(r"[^A-Za-z0-9]+", node_id) if part)

    # ---------- zones ----------
    def availability_zones(self) -> tuple[str, ...]:
        return tuple(
            f"{self.region}{suffix}" for suffix in constants.AVAILABILITY_ZONE_SUFFIXES
        )
