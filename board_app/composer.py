import copy
import os
from pathlib import Path
from random import Random
from typing import Any, Mapping, Optional, Union

from aws_lambda_powertools import Logger

import common.constants as constants
from common.errors import ValidationError
from common.identity import IdentityRegistry
from common.stack_context import StackContext, validate_stack_name
from board_app.artifacts import Artifact, ArtifactPackager
from board_app.config import StackConfig
from board_app.credentials import DB_PASSWORD_POLICY, SecretGenerator
from board_app.resolver import resolve
from board_app.resources import (
    Join,
    ResourceKind,
    ResourceNode,
    SecurityGroupRule,
    StackGraph,
    VpcConfig,
)
from board_app.state import StackState

logger = Logger(service=constants.SERVICE_NAME, level=os.getenv("LOG_LEVEL", "INFO").upper())


class StackComposer:
    """Declares every resource of one board stack, in dependency order."""

    def __init__(
        self,
        stack_name: str,
        config: Union[StackConfig, Mapping[str, Any]],
        state: Optional[StackState] = None,
        packager: Optional[ArtifactPackager] = None,
        registry: Optional[IdentityRegistry] = None,
        base_dir: Union[str, Path, None] = None,
        rng: Optional[Random] = None,
    ) -> None:
        self.stack_name = validate_stack_name(stack_name)
        if config is None:
            raise ValidationError("Stack configuration is required", resource_id=stack_name)
        self.config = (
            config
            if isinstance(config, StackConfig)
            else StackConfig.from_mapping(config, stack_name=stack_name)
        )
        self.state = state or StackState(stack_name=stack_name)
        if self.state.stack_name != stack_name:
            raise ValidationError(
                f"State belongs to stack {self.state.stack_name}",
                resource_id=stack_name,
                field="state",
            )
        self.packager = packager or ArtifactPackager()
        self.registry = registry or IdentityRegistry(rng)
        self.base_dir = Path(base_dir) if base_dir is not None else Path.cwd()
        self.rng = rng

    def compose(self) -> StackGraph:
        logger.info("Composing stack", stack=self.stack_name, version=self.config.version)
        token = self.registry.token_for(self.stack_name, self.state.identity_token)
        self.context = StackContext(
            stack_name=self.stack_name, identity_token=token, region=self.config.region
        )
        self.graph = StackGraph(self.stack_name)
        self.secrets = SecretGenerator(
            self.graph, self.context, persisted=self.state.secrets, rng=self.rng
        )

        # Network
        self.vpc = self._build_vpc()
        self.subnets = self._build_subnets()
        self.db_subnet_group = self._build_db_subnet_group()
        self.db_parameter_group = self._build_db_parameter_group()

        # Database credential, generated by the provisioning engine
        self.db_password = self.secrets.generate_secret("db-password", DB_PASSWORD_POLICY)

        # Security groups
        self.lambda_security_group = self._build_lambda_security_group()
        self.db_security_group = self._build_db_security_group()

        self.db = self._build_db_instance()

        # Code storage
        self.bucket = self._build_bucket()
        self.artifact = self.packager.package(self.base_dir / self.config.path)
        self.lambda_archive = self._build_lambda_archive(self.artifact)

        # Execution role
        self.role = self._build_execution_role()
        self._build_policy_attachments()

        self.function = self._build_function()

        # HTTP entry point
        self.api = self._build_api_gateway()
        self._build_invoke_permission()
        self.graph.declare(
            ResourceKind.OUTPUT,
            "url",
            value=self.api.ref("api_endpoint"),
            description="Public endpoint of the HTTP API",
        )

        resolve(self.graph)
        self.graph.state = self.state.with_identity(token).with_secrets(self.secrets.handles)
        logger.info(
            "Composed stack",
            stack=self.stack_name,
            resources=len(self.graph),
            identity_token=str(token),
        )
        return self.graph

    # Resource creation

    def _build_vpc(self) -> ResourceNode:
        return self.graph.declare(
            ResourceKind.NETWORK,
            "vpc",
            cidr_block=constants.VPC_CIDR,
            enable_dns_support=True,
            enable_dns_hostnames=True,
        )

    def _build_subnets(self) -> list[ResourceNode]:
        """One private subnet per availability zone."""
        zones = self.context.availability_zones()
        return [
            self.graph.declare(
                ResourceKind.SUBNET,
                f"subnet-{position}",
                vpc_id=self.vpc.ref("id"),
                availability_zone=zone,
                cidr_block=cidr,
                map_public_ip_on_launch=False,
            )
            for position, (zone, cidr) in enumerate(zip(zones, constants.SUBNET_CIDRS), start=1)
        ]

    def _build_db_subnet_group(self) -> ResourceNode:
        return self.graph.declare(
            ResourceKind.DB_SUBNET_GROUP,
            "db-subnet-group",
            name=self.context.build_resource_name("db-group"),
            description=f"Database subnets of {self.stack_name}",
            subnet_ids=[subnet.ref("id") for subnet in self.subnets],
        )

    def _build_db_parameter_group(self) -> ResourceNode:
        return self.graph.declare(
            ResourceKind.DB_PARAMETER_GROUP,
            "db-parameter-group",
            name=self.context.build_resource_name("parameter"),
            description=f"Database parameters of {self.stack_name}",
            family=constants.DB_PARAMETER_FAMILY,
        )

    def _build_lambda_security_group(self) -> ResourceNode:
        return self.graph.declare(
            ResourceKind.SECURITY_GROUP,
            "lambda-security-group",
            name=self.context.build_resource_name("lambda-sg"),
            description="Security group for the board function",
            vpc_id=self.vpc.ref("id"),
            ingress=[],
            egress=[self._allow_all_outbound()],
        )

    def _build_db_security_group(self) -> ResourceNode:
        """Database traffic is only accepted from the function's security group."""
        return self.graph.declare(
            ResourceKind.SECURITY_GROUP,
            "db-security-group",
            name=self.context.build_resource_name("db-sg"),
            description="Security group for the board database",
            vpc_id=self.vpc.ref("id"),
            ingress=[
                SecurityGroupRule(
                    protocol="tcp",
                    from_port=constants.DB_PORT,
                    to_port=constants.DB_PORT,
                    source_security_group=self.lambda_security_group.ref("id"),
                    description="PostgreSQL from the board function",
                )
            ],
            egress=[self._allow_all_outbound()],
        )

    @staticmethod
    def _allow_all_outbound() -> SecurityGroupRule:
        return SecurityGroupRule(
            protocol=constants.ALL_PROTOCOLS,
            from_port=0,
            to_port=0,
            cidr_blocks=[constants.ANY_IPV4_CIDR],
            description="Allow all outbound traffic",
        )

    def _build_db_instance(self) -> ResourceNode:
        return self.graph.declare(
            ResourceKind.DB_INSTANCE,
            "db",
            identifier=self.context.build_resource_name("db"),
            multi_az=False,
            instance_class=constants.DB_INSTANCE_CLASS,
            allocated_storage=constants.DB_ALLOCATED_STORAGE,
            storage_encrypted=True,
            db_subnet_group_name=self.db_subnet_group.ref("name"),
            vpc_security_group_ids=[self.db_security_group.ref("id")],
            db_name=constants.DB_NAME,
            username=constants.DB_USERNAME,
            password=self.db_password.result,
            port=constants.DB_PORT,
            engine=constants.DB_ENGINE,
            engine_version=constants.DB_ENGINE_VERSION,
            parameter_group_name=self.db_parameter_group.ref("name"),
            backup_retention_period=constants.DB_BACKUP_RETENTION_DAYS,
            skip_final_snapshot=True,
            apply_immediately=True,
        )

    def _build_bucket(self) -> ResourceNode:
        """Bucket names are global, so this one carries the identity token."""
        return self.graph.declare(
            ResourceKind.BUCKET,
            "bucket",
            bucket_name=self.context.build_resource_name("artifacts", globally_unique=True),
        )

    def _build_lambda_archive(self, artifact: Artifact) -> ResourceNode:
        return self.graph.declare(
            ResourceKind.ARTIFACT,
            "lambda-archive",
            bucket=self.bucket.ref("bucket"),
            key=artifact.storage_key(self.config.version),
            source=artifact.archive_path,
            content_hash=artifact.content_hash,
            version=self.config.version,
        )

    def _build_execution_role(self) -> ResourceNode:
        return self.graph.declare(
            ResourceKind.ROLE,
            "lambda-exec",
            name=self.context.build_resource_name("lambda-exec", globally_unique=True),
            assume_role_policy=copy.deepcopy(constants.LAMBDA_ASSUME_ROLE_POLICY),
        )

    def _build_policy_attachments(self) -> list[ResourceNode]:
        attachments = (
            ("lambda-managed-policy", constants.BASIC_EXECUTION_POLICY_ARN),
            ("lambda-vpc-access-policy", constants.VPC_ACCESS_EXECUTION_POLICY_ARN),
        )
        return [
            self.graph.declare(
                ResourceKind.POLICY_ATTACHMENT,
                node_id,
                role=self.role.ref("name"),
                policy_arn=policy_arn,
            )
            for node_id, policy_arn in attachments
        ]

    def _build_function(self) -> ResourceNode:
        return self.graph.declare(
            ResourceKind.COMPUTE_FUNCTION,
            "board-lambda",
            function_name=self.context.build_resource_name("lambda", globally_unique=True),
            timeout=constants.FUNCTION_TIMEOUT_SECONDS,
            s3_bucket=self.bucket.ref("bucket"),
            s3_key=self.lambda_archive.ref("key"),
            handler=self.config.handler,
            runtime=self.config.runtime,
            role=self.role.ref("arn"),
            vpc_config=VpcConfig(
                subnet_ids=[subnet.ref("id") for subnet in self.subnets],
                security_group_ids=[self.lambda_security_group.ref("id")],
            ),
            environment={
                "DB_URL": self.db.ref("address"),
                "DB_PORT": self.db.ref("port"),
                "DB_PASSWORD": self.db_password.result,
                "STAGE": self.config.stage_name,
            },
        )

    def _build_api_gateway(self) -> ResourceNode:
        return self.graph.declare(
            ResourceKind.GATEWAY_API,
            "api-gw",
            name=self.context.build_resource_name("api"),
            description=f"HTTP API of {self.stack_name} ({self.config.stage_name})",
            protocol_type=constants.GATEWAY_PROTOCOL,
            target=self.function.ref("arn"),
        )

    def _build_invoke_permission(self) -> ResourceNode:
        """Only the HTTP API may invoke the function."""
        return self.graph.declare(
            ResourceKind.PERMISSION,
            "apigw-lambda",
            function_name=self.function.ref("function_name"),
            action=constants.INVOKE_FUNCTION_ACTION,
            principal=constants.API_GATEWAY_SERVICE_PRINCIPAL,
            source_arn=Join(
                [self.api.ref("execution_arn"), constants.GATEWAY_SOURCE_ARN_SUFFIX]
            ),
        )


def compose_stack(
    stack_name: str,
    config: Union[StackConfig, Mapping[str, Any]],
    state: Optional[StackState] = None,
    packager: Optional[ArtifactPackager] = None,
    registry: Optional[IdentityRegistry] = None,
    base_dir: Union[str, Path, None] = None,
    rng: Optional[Random] = None,
) -> StackGraph:
    return StackComposer(
        stack_name,
        config,
        state=state,
        packager=packager,
        registry=registry,
        base_dir=base_dir,
        rng=rng,
    ).compose()

