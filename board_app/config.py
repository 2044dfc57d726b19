import re
from typing import Any, Mapping, Optional

from attrs import define, field, fields

import common.constants as constants
from common.errors import ValidationError

SEMVER_PATTERN = re.compile(r"^v?\d+\.\d+\.\d+(?:-[0-9A-Za-z.-]+)?$")

# The node that consumes each configuration field, named in validation errors.
FIELD_CONSUMERS = {
    "path": "lambda-archive",
    "handler": "board-lambda",
    "runtime": "board-lambda",
    "stage_name": "board-lambda",
    "version": "lambda-archive",
    "region": "vpc",
}

CAMEL_CASE_KEYS = {"stageName": "stage_name"}

# Names the configuration record itself when no stack name is known.
STACK_CONFIG_ID = "stack-config"


def _required_text(instance, attribute, value: Any) -> None:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(
            f"Configuration field '{attribute.name}' is required, got {value!r}",
            resource_id=FIELD_CONSUMERS[attribute.name],
            field=attribute.name,
        )


def _semantic_version(instance, attribute, value: str) -> None:
    if not SEMVER_PATTERN.match(value):
        raise ValidationError(
            f"Configuration field 'version' must be a semantic version like v1.0.0, got {value!r}",
            resource_id=FIELD_CONSUMERS[attribute.name],
            field=attribute.name,
        )


@define(slots=True, frozen=True, kw_only=True)
class StackConfig:
    path: str = field(
        validator=_required_text,
        metadata={"description": "Directory holding the pre-built function code"},
    )
    handler: str = field(
        validator=_required_text,
        metadata={"description": "Function entry point, e.g. index.handler"},
    )
    runtime: str = field(
        validator=_required_text,
        metadata={"description": "Compute runtime identifier, e.g. nodejs18.x"},
    )
    stage_name: str = field(
        validator=_required_text,
        metadata={"description": "Deployment stage label"},
    )
    version: str = field(
        validator=[_required_text, _semantic_version],
        metadata={"description": "Version label of the uploaded artifact"},
    )
    region: str = field(default=constants.DEFAULT_REGION, validator=_required_text)

    @classmethod
    def from_mapping(
        cls, values: Mapping[str, Any], stack_name: Optional[str] = None
    ) -> "StackConfig":
        """Build a config from the external record, camelCase or snake_case."""
        known = {attribute.name for attribute in fields(cls)}
        kwargs: dict[str, Any] = {}
        for key, value in values.items():
            name = CAMEL_CASE_KEYS.get(key, key)
            if name not in known:
                raise ValidationError(
                    f"Unknown configuration field '{key}'",
                    resource_id=stack_name or STACK_CONFIG_ID,
                    field=key,
                )
            kwargs[name] = value
        for name in known - {"region"}:
            kwargs.setdefault(name, None)
        return cls(**kwargs)
