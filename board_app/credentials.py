import os
import secrets
from random import Random
from typing import Mapping, Optional

from attrs import define, field
from attrs.validators import instance_of
from aws_lambda_powertools import Logger

import common.constants as constants
from common.errors import ValidationError
from common.stack_context import StackContext
from board_app.resources import Reference, ResourceKind, SecretPolicy, StackGraph

logger = Logger(service=constants.SERVICE_NAME, level=os.getenv("LOG_LEVEL", "INFO").upper())

DB_PASSWORD_POLICY = SecretPolicy(
    length=constants.DB_PASSWORD_LENGTH,
    special=True,
    override_special=constants.DB_PASSWORD_OVERRIDE_SPECIAL,
)


@define(slots=True, frozen=True)
class SecretHandle:
    """Opaque handle to a generated secret.

    The raw value never exists in this process; consumers receive ``result``,
    a reference the provisioning engine resolves when it provisions them.
    """

    role: str = field(validator=instance_of(str))
    handle_id: str = field(validator=instance_of(str))
    policy: SecretPolicy = field(validator=instance_of(SecretPolicy))

    @property
    def node_id(self) -> str:
        return self.role

    @property
    def result(self) -> Reference:
        return Reference(self.node_id, "result")

    @property
    def arn(self) -> Reference:
        return Reference(self.node_id, "arn")


class SecretGenerator:
    """Declares the secrets of one stack, reusing any handle already persisted."""

    def __init__(
        self,
        graph: StackGraph,
        context: StackContext,
        persisted: Optional[Mapping[str, SecretHandle]] = None,
        rng: Optional[Random] = None,
    ) -> None:
        self._graph = graph
        self._context = context
        self._persisted = dict(persisted or {})
        self._rng = rng
        self._handles: dict[str, SecretHandle] = {}

    @property
    def handles(self) -> dict[str, SecretHandle]:
        return dict(self._handles)

    def generate_secret(self, role: str, policy: SecretPolicy) -> SecretHandle:
        if role in self._handles:
            handle = self._handles[role]
            self._check_policy(handle, policy)
            return handle

        handle = self._persisted.get(role)
        if handle is not None:
            self._check_policy(handle, policy)
            logger.debug("Reusing persisted secret handle", role=role, handle_id=handle.handle_id)
        else:
            handle = SecretHandle(role=role, handle_id=self._new_handle_id(), policy=policy)
            logger.info("Generated new secret handle", role=role, handle_id=handle.handle_id)

        self._graph.declare(
            ResourceKind.SECRET,
            handle.node_id,
            name=self._context.build_resource_name(role, globally_unique=True),
            policy=handle.policy,
            handle_id=handle.handle_id,
        )
        self._graph.holds_unrecoverable_secret = True
        self._handles[role] = handle
        return handle

    def _new_handle_id(self) -> str:
        if self._rng is not None:
            return f"{self._rng.getrandbits(32):08x}"
        return secrets.token_hex(4)

    @staticmethod
    def _check_policy(handle: SecretHandle, policy: SecretPolicy) -> None:
        if handle.policy != policy:
            raise ValidationError(
                f"Secret '{handle.role}' was generated with {handle.policy}; "
                f"requested {policy} would replace a provisioned credential",
                resource_id=handle.node_id,
                field="policy",
            )
