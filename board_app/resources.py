from enum import Enum
from typing import Any, Iterable, Iterator, Mapping, Optional

import attrs
from attrs import define, field, setters
from attrs.validators import instance_of

from common.errors import ValidationError
from common.stack_context import validate_stack_name


class ResourceKind(str, Enum):
    NETWORK = "Network"
    SUBNET = "Subnet"
    SECURITY_GROUP = "SecurityGroup"
    DB_INSTANCE = "DbInstance"
    DB_SUBNET_GROUP = "DbSubnetGroup"
    DB_PARAMETER_GROUP = "DbParameterGroup"
    SECRET = "Secret"
    BUCKET = "Bucket"
    ARTIFACT = "Artifact"
    ROLE = "Role"
    POLICY_ATTACHMENT = "PolicyAttachment"
    COMPUTE_FUNCTION = "ComputeFunction"
    GATEWAY_API = "GatewayApi"
    PERMISSION = "Permission"
    OUTPUT = "Output"


REQUIRED_ATTRIBUTES: Mapping[ResourceKind, tuple[str, ...]] = {
    ResourceKind.NETWORK: ("cidr_block",),
    ResourceKind.SUBNET: ("vpc_id", "cidr_block", "availability_zone"),
    ResourceKind.SECURITY_GROUP: ("name", "vpc_id"),
    ResourceKind.DB_SUBNET_GROUP: ("name", "subnet_ids"),
    ResourceKind.DB_PARAMETER_GROUP: ("name", "family"),
    ResourceKind.SECRET: ("name", "policy", "handle_id"),
    ResourceKind.DB_INSTANCE: (
        "identifier",
        "engine",
        "engine_version",
        "instance_class",
        "allocated_storage",
        "db_name",
        "username",
        "password",
        "port",
        "db_subnet_group_name",
        "vpc_security_group_ids",
        "parameter_group_name",
    ),
    ResourceKind.BUCKET: ("bucket_name",),
    ResourceKind.ARTIFACT: ("bucket", "key", "source", "content_hash"),
    ResourceKind.ROLE: ("name", "assume_role_policy"),
    ResourceKind.POLICY_ATTACHMENT: ("role", "policy_arn"),
    ResourceKind.COMPUTE_FUNCTION: (
        "function_name",
        "handler",
        "runtime",
        "role",
        "s3_bucket",
        "s3_key",
    ),
    ResourceKind.GATEWAY_API: ("name", "protocol_type", "target"),
    ResourceKind.PERMISSION: ("function_name", "action", "principal", "source_arn"),
    ResourceKind.OUTPUT: ("value",),
}

# Output attributes each kind exposes. The value names the attribute the output
# is copied from when it is known at synthesis time, None when only the
# provisioning engine can produce it.
OUTPUT_ATTRIBUTES: Mapping[ResourceKind, Mapping[str, Optional[str]]] = {
    ResourceKind.NETWORK: {"id": None},
    ResourceKind.SUBNET: {"id": None},
    ResourceKind.SECURITY_GROUP: {"id": None},
    ResourceKind.DB_SUBNET_GROUP: {"name": "name"},
    ResourceKind.DB_PARAMETER_GROUP: {"name": "name"},
    ResourceKind.SECRET: {"arn": None, "result": None},
    ResourceKind.DB_INSTANCE: {"identifier": "identifier", "address": None, "port": None},
    ResourceKind.BUCKET: {"bucket": "bucket_name", "arn": None},
    ResourceKind.ARTIFACT: {"key": "key", "content_hash": "content_hash"},
    ResourceKind.ROLE: {"name": "name", "arn": None},
    ResourceKind.POLICY_ATTACHMENT: {},
    ResourceKind.COMPUTE_FUNCTION: {"function_name": "function_name", "arn": None},
    ResourceKind.GATEWAY_API: {"id": None, "api_endpoint": None, "execution_arn": None},
    ResourceKind.PERMISSION: {},
    ResourceKind.OUTPUT: {},
}

# Attributes that must be bound by reference, and the kinds they may point to.
# Nested paths leave out list indices, e.g. ``vpc_config.subnet_ids``.
REFERENCE_TARGETS: Mapping[ResourceKind, Mapping[str, tuple[ResourceKind, ...]]] = {
    ResourceKind.SUBNET: {"vpc_id": (ResourceKind.NETWORK,)},
    ResourceKind.SECURITY_GROUP: {
        "vpc_id": (ResourceKind.NETWORK,),
        "ingress.source_security_group": (ResourceKind.SECURITY_GROUP,),
        "egress.source_security_group": (ResourceKind.SECURITY_GROUP,),
    },
    ResourceKind.DB_SUBNET_GROUP: {"subnet_ids": (ResourceKind.SUBNET,)},
    ResourceKind.DB_INSTANCE: {
        "password": (ResourceKind.SECRET,),
        "db_subnet_group_name": (ResourceKind.DB_SUBNET_GROUP,),
        "vpc_security_group_ids": (ResourceKind.SECURITY_GROUP,),
        "parameter_group_name": (ResourceKind.DB_PARAMETER_GROUP,),
    },
    ResourceKind.ARTIFACT: {"bucket": (ResourceKind.BUCKET,)},
    ResourceKind.POLICY_ATTACHMENT: {"role": (ResourceKind.ROLE,)},
    ResourceKind.COMPUTE_FUNCTION: {
        "role": (ResourceKind.ROLE,),
        "s3_bucket": (ResourceKind.BUCKET,),
        "s3_key": (ResourceKind.ARTIFACT,),
        "vpc_config.subnet_ids": (ResourceKind.SUBNET,),
        "vpc_config.security_group_ids": (ResourceKind.SECURITY_GROUP,),
    },
    ResourceKind.GATEWAY_API: {"target": (ResourceKind.COMPUTE_FUNCTION,)},
    ResourceKind.PERMISSION: {
        "function_name": (ResourceKind.COMPUTE_FUNCTION,),
        "source_arn": (ResourceKind.GATEWAY_API,),
    },
}


# ---------- values ----------


@define(slots=True, frozen=True)
class Reference:
    """Lazy binding to the eventual output ``attribute`` of node ``node_id``."""

    node_id: str = field(validator=instance_of(str))
    attribute: str = field(validator=instance_of(str))

    @property
    def placeholder(self) -> str:
        return f"${{{self.node_id}.{self.attribute}}}"

    def __str__(self) -> str:
        return self.placeholder


def _validate_join_parts(instance, attribute, parts: tuple) -> None:
    for part in parts:
        if not isinstance(part, (str, Reference)):
            raise ValidationError(
                f"Join parts must be strings or references, got {type(part).__name__}",
                field=attribute.name,
            )


@define(slots=True, frozen=True)
class Join:
    """String interpolation of literals and references, e.g. ``<arn>/*/*``."""

    parts: tuple = field(converter=tuple, validator=_validate_join_parts)

    @property
    def placeholder(self) -> str:
        return "".join(str(part) for part in self.parts)


@define(slots=True, frozen=True, kw_only=True)
class SecurityGroupRule:
    protocol: str = field(validator=instance_of(str))
    from_port: int = field(validator=instance_of(int))
    to_port: int = field(validator=instance_of(int))
    cidr_blocks: tuple[str, ...] = field(default=(), converter=tuple)
    source_security_group: Optional[Reference] = field(default=None)
    description: str = field(default="", validator=instance_of(str))

    def __attrs_post_init__(self) -> None:
        if self.from_port > self.to_port:
            raise ValidationError(
                f"from_port {self.from_port} is greater than to_port {self.to_port}",
                field="from_port",
            )
        if bool(self.cidr_blocks) == (self.source_security_group is not None):
            raise ValidationError(
                "A security group rule needs exactly one peer: cidr_blocks or "
                "source_security_group",
                field="source_security_group",
            )
        if self.source_security_group is not None and not isinstance(
            self.source_security_group, Reference
        ):
            raise ValidationError(
                "source_security_group must be a reference to a security group",
                field="source_security_group",
            )


@define(slots=True, frozen=True, kw_only=True)
class VpcConfig:
    subnet_ids: tuple = field(converter=tuple)
    security_group_ids: tuple = field(converter=tuple)

    def __attrs_post_init__(self) -> None:
        if not self.subnet_ids:
            raise ValidationError("VPC config needs at least one subnet", field="subnet_ids")
        if not self.security_group_ids:
            raise ValidationError(
                "VPC config needs at least one security group", field="security_group_ids"
            )
        for name in ("subnet_ids", "security_group_ids"):
            if not all(isinstance(item, Reference) for item in getattr(self, name)):
                raise ValidationError(f"VPC config {name} must be references", field=name)


@define(slots=True, frozen=True, kw_only=True)
class SecretPolicy:
    length: int = field(validator=instance_of(int))
    special: bool = field(default=True, validator=instance_of(bool))
    override_special: Optional[str] = field(default=None)

    def __attrs_post_init__(self) -> None:
        if not 4 <= self.length <= 4096:
            raise ValidationError(
                f"Secret length must be between 4 and 4096, got {self.length}",
                field="length",
            )
        if self.override_special and not self.special:
            raise ValidationError(
                "override_special requires special characters to be enabled",
                field="override_special",
            )


STRUCTURES = (SecurityGroupRule, VpcConfig, SecretPolicy)
LITERALS = (str, int, float, bool)


def iter_references(value: Any, path: str) -> Iterator[tuple[str, Reference]]:
    """Yield ``(attribute path, reference)`` for every reference inside ``value``."""
    if isinstance(value, Reference):
        yield path, value
    elif isinstance(value, Join):
        for index, part in enumerate(value.parts):
            yield from iter_references(part, f"{path}.{index}")
    elif isinstance(value, STRUCTURES):
        for attribute in attrs.fields(type(value)):
            yield from iter_references(getattr(value, attribute.name), f"{path}.{attribute.name}")
    elif isinstance(value, (list, tuple)):
        for index, item in enumerate(value):
            yield from iter_references(item, f"{path}.{index}")
    elif isinstance(value, Mapping):
        for key, item in value.items():
            yield from iter_references(item, f"{path}.{key}")


def _attribute_pattern(path: str) -> str:
    return ".".join(part for part in path.split(".") if not part.isdigit())


def _is_bound(value: Any) -> bool:
    if isinstance(value, Reference):
        return True
    if isinstance(value, Join):
        return any(isinstance(part, Reference) for part in value.parts)
    if isinstance(value, (list, tuple)):
        return bool(value) and all(isinstance(item, Reference) for item in value)
    return False


def check_reference_kind(source: "ResourceNode", path: str, target: "ResourceNode") -> None:
    """Reject a reference whose target kind the source attribute cannot use."""
    allowed = REFERENCE_TARGETS.get(source.kind, {}).get(_attribute_pattern(path))
    if allowed is not None and target.kind not in allowed:
        raise ValidationError(
            f"{source.kind.value} attribute '{path}' must reference "
            f"{' or '.join(kind.value for kind in allowed)}, got {target.kind.value} '{target.id}'",
            resource_id=source.id,
            field=path,
        )


def _check_value(node_id: str, path: str, value: Any) -> None:
    if value is None or isinstance(value, LITERALS + (Reference, Join) + STRUCTURES):
        return
    if isinstance(value, (list, tuple)):
        for index, item in enumerate(value):
            _check_value(node_id, f"{path}.{index}", item)
        return
    if isinstance(value, Mapping):
        for key, item in value.items():
            if not isinstance(key, str):
                raise ValidationError(
                    f"Mapping keys must be strings, got {type(key).__name__}",
                    resource_id=node_id,
                    field=path,
                )
            _check_value(node_id, f"{path}.{key}", item)
        return
    raise ValidationError(
        f"Unsupported attribute value of type {type(value).__name__}; "
        "pass other resources and secrets by reference",
        resource_id=node_id,
        field=path,
    )


# ---------- nodes ----------


def _to_kind(value: Any) -> ResourceKind:
    try:
        return ResourceKind(value)
    except ValueError:
        raise ValidationError(f"Unknown resource kind {value!r}", field="kind") from None


@define(slots=True)
class ResourceNode:
    id: str = field(validator=instance_of(str), on_setattr=setters.frozen)
    kind: ResourceKind = field(converter=_to_kind, on_setattr=setters.frozen)
    attributes: dict[str, Any] = field(factory=dict, converter=dict)
    outputs: dict[str, Any] = field(factory=dict, init=False)

    def __attrs_post_init__(self) -> None:
        if not self.id:
            raise ValidationError(f"{self.kind.value} node needs an id", field="id")
        for name in REQUIRED_ATTRIBUTES[self.kind]:
            if self.attributes.get(name) is None:
                raise ValidationError(
                    f"{self.kind.value} requires attribute '{name}'",
                    resource_id=self.id,
                    field=name,
                )
        for name, value in self.attributes.items():
            _check_value(self.id, name, value)
        for name in REFERENCE_TARGETS.get(self.kind, {}):
            value = self.attributes.get(name)
            if "." not in name and value is not None and not _is_bound(value):
                raise ValidationError(
                    f"{self.kind.value} attribute '{name}' must be a reference to another "
                    f"resource, got {value!r}",
                    resource_id=self.id,
                    field=name,
                )

    def ref(self, attribute: str) -> Reference:
        if attribute not in OUTPUT_ATTRIBUTES[self.kind]:
            raise ValidationError(
                f"{self.kind.value} has no output '{attribute}', expected one of "
                f"{sorted(OUTPUT_ATTRIBUTES[self.kind])}",
                resource_id=self.id,
                field=attribute,
            )
        return Reference(self.id, attribute)

    def references(self) -> list[tuple[str, Reference]]:
        found: list[tuple[str, Reference]] = []
        for name, value in self.attributes.items():
            found.extend(iter_references(value, name))
        return found


@define(slots=True, frozen=True, order=True)
class Edge:
    """``source.attribute`` is bound to ``target.output_attribute``."""

    source: str
    attribute: str
    target: str
    output_attribute: str


class StackGraph:
    """Every node and reference edge of one named deployment."""

    def __init__(self, name: str, state: Any = None) -> None:
        self.name = validate_stack_name(name)
        self.state = state
        self.holds_unrecoverable_secret = False
        self._nodes: dict[str, ResourceNode] = {}

    @classmethod
    def from_nodes(cls, name: str, nodes: Iterable[ResourceNode]) -> "StackGraph":
        """Adopt already-built nodes without enforcing declaration order."""
        graph = cls(name)
        for node in nodes:
            graph.add(node, require_declared_targets=False)
        return graph

    def add(self, node: ResourceNode, require_declared_targets: bool = True) -> ResourceNode:
        if node.id in self._nodes:
            raise ValidationError(
                f"Duplicate resource id in stack {self.name}",
                resource_id=node.id,
                field="id",
            )
        if require_declared_targets:
            for path, reference in node.references():
                self._check_target(node, path, reference)
        self._nodes[node.id] = node
        return node

    def declare(self, kind: ResourceKind, node_id: str, **attributes: Any) -> ResourceNode:
        return self.add(ResourceNode(id=node_id, kind=kind, attributes=attributes))

    def _check_target(self, source: ResourceNode, path: str, reference: Reference) -> None:
        target = self._nodes.get(reference.node_id)
        if target is None:
            raise ValidationError(
                f"Reference to undeclared resource '{reference.node_id}'",
                resource_id=source.id,
                field=path,
            )
        if reference.attribute not in OUTPUT_ATTRIBUTES[target.kind]:
            raise ValidationError(
                f"Reference to unknown output '{reference.attribute}' of "
                f"{target.kind.value} '{target.id}'",
                resource_id=source.id,
                field=path,
            )
        check_reference_kind(source, path, target)

    def get(self, node_id: str) -> ResourceNode:
        try:
            return self._nodes[node_id]
        except KeyError:
            raise ValidationError(
                f"No resource '{node_id}' in stack {self.name}", resource_id=node_id
            ) from None

    @property
    def nodes(self) -> list[ResourceNode]:
        return list(self._nodes.values())

    def of_kind(self, kind: ResourceKind) -> list[ResourceNode]:
        return [node for node in self._nodes.values() if node.kind == kind]

    def edges(self) -> list[Edge]:
        return [
            Edge(node.id, path, reference.node_id, reference.attribute)
            for node in self._nodes.values()
            for path, reference in node.references()
        ]

    def dependencies_of(self, node_id: str) -> list[str]:
        seen: list[str] = []
        for _, reference in self.get(node_id).references():
            if reference.node_id not in seen:
                seen.append(reference.node_id)
        return seen

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def __iter__(self) -> Iterator[ResourceNode]:
        return iter(self.nodes)

    def __len__(self) -> int:
        return len(self._nodes)
