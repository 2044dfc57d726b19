import string
from pathlib import Path
from typing import Any, Callable, Mapping, Optional

from aws_cdk import (
    CfnOutput,
    CfnResource,
    Fn,
    RemovalPolicy,
    Stack,
    Token,
    aws_s3 as s3,
    aws_s3_deployment as s3_deployment,
)
from constructs import Construct, IConstruct

from common.stack_context import StackContext
from board_app.resolver import topological_order
from board_app.resources import (
    Join,
    Reference,
    ResourceKind,
    ResourceNode,
    SecretPolicy,
    SecurityGroupRule,
    StackGraph,
)

EXECUTION_ARN_TEMPLATE = "arn:${AWS::Partition}:execute-api:${AWS::Region}:${AWS::AccountId}:${ApiId}"
SECRET_JSON_KEY = "password"


def _ref(resource: CfnResource) -> str:
    return resource.ref


def _get_att(name: str) -> Callable[[CfnResource], str]:
    def token(resource: CfnResource) -> str:
        return Token.as_string(resource.get_att(name))

    return token


def _secret_value(resource: CfnResource) -> str:
    return Fn.join(
        "",
        ["{{resolve:secretsmanager:", resource.ref, f":SecretString:{SECRET_JSON_KEY}::}}}}"],
    )


def _execution_arn(resource: CfnResource) -> str:
    return Fn.sub(EXECUTION_ARN_TEMPLATE, {"ApiId": resource.ref})


# How each referenceable output renders in the template.
OUTPUT_TOKENS: Mapping[tuple[ResourceKind, str], Callable[[CfnResource], str]] = {
    (ResourceKind.NETWORK, "id"): _ref,
    (ResourceKind.SUBNET, "id"): _ref,
    (ResourceKind.SECURITY_GROUP, "id"): _get_att("GroupId"),
    (ResourceKind.DB_SUBNET_GROUP, "name"): _ref,
    (ResourceKind.DB_PARAMETER_GROUP, "name"): _ref,
    (ResourceKind.SECRET, "arn"): _ref,
    (ResourceKind.SECRET, "result"): _secret_value,
    (ResourceKind.DB_INSTANCE, "identifier"): _ref,
    (ResourceKind.DB_INSTANCE, "address"): _get_att("Endpoint.Address"),
    (ResourceKind.DB_INSTANCE, "port"): _get_att("Endpoint.Port"),
    (ResourceKind.BUCKET, "bucket"): _ref,
    (ResourceKind.BUCKET, "arn"): _get_att("Arn"),
    (ResourceKind.ROLE, "name"): _ref,
    (ResourceKind.ROLE, "arn"): _get_att("Arn"),
    (ResourceKind.COMPUTE_FUNCTION, "function_name"): _ref,
    (ResourceKind.COMPUTE_FUNCTION, "arn"): _get_att("Arn"),
    (ResourceKind.GATEWAY_API, "id"): _ref,
    (ResourceKind.GATEWAY_API, "api_endpoint"): _get_att("ApiEndpoint"),
    (ResourceKind.GATEWAY_API, "execution_arn"): _execution_arn,
}


def generate_secret_string(policy: SecretPolicy) -> dict[str, Any]:
    """Secrets Manager generation options matching a secret policy."""
    options: dict[str, Any] = {
        "SecretStringTemplate": "{}",
        "GenerateStringKey": SECRET_JSON_KEY,
        "PasswordLength": policy.length,
    }
    if not policy.special:
        options["ExcludePunctuation"] = True
    elif policy.override_special:
        options["ExcludeCharacters"] = "".join(
            char for char in string.punctuation if char not in policy.override_special
        )
    return options


class BoardAppStack(Stack):
    """Renders a composed StackGraph as CloudFormation resources."""

    def __init__(self, scope: Construct, construct_id: str, graph: StackGraph, **kwargs) -> None:
        super().__init__(scope, construct_id, **kwargs)
        self.graph = graph
        self.resources: dict[str, IConstruct] = {}
        self._managed_policy_arns: dict[str, list[str]] = {}

        builders: Mapping[ResourceKind, Callable[[ResourceNode], Optional[IConstruct]]] = {
            ResourceKind.NETWORK: self._build_vpc,
            ResourceKind.SUBNET: self._build_subnet,
            ResourceKind.SECURITY_GROUP: self._build_security_group,
            ResourceKind.DB_SUBNET_GROUP: self._build_db_subnet_group,
            ResourceKind.DB_PARAMETER_GROUP: self._build_db_parameter_group,
            ResourceKind.SECRET: self._build_secret,
            ResourceKind.DB_INSTANCE: self._build_db_instance,
            ResourceKind.BUCKET: self._build_bucket,
            ResourceKind.ARTIFACT: self._build_artifact_upload,
            ResourceKind.ROLE: self._build_role,
            ResourceKind.POLICY_ATTACHMENT: self._attach_managed_policy,
            ResourceKind.COMPUTE_FUNCTION: self._build_function,
            ResourceKind.GATEWAY_API: self._build_http_api,
            ResourceKind.PERMISSION: self._build_permission,
            ResourceKind.OUTPUT: self._build_output,
        }

        for node in topological_order(graph):
            construct = builders[node.kind](node)
            if construct is None:
                continue
            self.resources[node.id] = construct
            self._depend_on_uploads(node, construct)

    # Values

    def _render(self, value: Any) -> Any:
        if isinstance(value, Reference):
            return self._output_token(value)
        if isinstance(value, Join):
            return Fn.join("", [self._render(part) for part in value.parts])
        if isinstance(value, (list, tuple)):
            return [self._render(item) for item in value]
        if isinstance(value, Mapping):
            return {key: self._render(item) for key, item in value.items()}
        return value

    def _output_token(self, reference: Reference) -> str:
        target = self.graph.get(reference.node_id)
        if target.kind == ResourceKind.ARTIFACT:
            # Object keys are fixed at synthesis; ordering comes from _depend_on_uploads.
            return target.attributes[reference.attribute]
        return OUTPUT_TOKENS[(target.kind, reference.attribute)](self.resources[target.id])

    def _depend_on_uploads(self, node: ResourceNode, construct: IConstruct) -> None:
        for target_id in self.graph.dependencies_of(node.id):
            if self.graph.get(target_id).kind == ResourceKind.ARTIFACT:
                construct.node.add_dependency(self.resources[target_id])

    def _cfn(self, node: ResourceNode, resource_type: str, properties: Mapping[str, Any]) -> CfnResource:
        return CfnResource(
            self,
            StackContext.build_resource_id(node.id),
            type=resource_type,
            properties={key: value for key, value in properties.items() if value is not None},
        )

    def _rules(self, rules: list[SecurityGroupRule], egress: bool) -> list[dict[str, Any]]:
        peer_key = "DestinationSecurityGroupId" if egress else "SourceSecurityGroupId"
        rendered = []
        for rule in rules:
            base = {
                "IpProtocol": rule.protocol,
                "FromPort": rule.from_port,
                "ToPort": rule.to_port,
                "Description": rule.description or None,
            }
            base = {key: value for key, value in base.items() if value is not None}
            if rule.source_security_group is not None:
                rendered.append({**base, peer_key: self._render(rule.source_security_group)})
            else:
                rendered.extend({**base, "CidrIp": cidr} for cidr in rule.cidr_blocks)
        return rendered

    # Resource creation

    def _build_vpc(self, node: ResourceNode) -> CfnResource:
        attributes = node.attributes
        return self._cfn(
            node,
            "AWS::EC2::VPC",
            {
                "CidrBlock": attributes["cidr_block"],
                "EnableDnsSupport": attributes.get("enable_dns_support"),
                "EnableDnsHostnames": attributes.get("enable_dns_hostnames"),
            },
        )

    def _build_subnet(self, node: ResourceNode) -> CfnResource:
        attributes = node.attributes
        return self._cfn(
            node,
            "AWS::EC2::Subnet",
            {
                "VpcId": self._render(attributes["vpc_id"]),
                "AvailabilityZone": attributes["availability_zone"],
                "CidrBlock": attributes["cidr_block"],
                "MapPublicIpOnLaunch": attributes.get("map_public_ip_on_launch"),
            },
        )

    def _build_security_group(self, node: ResourceNode) -> CfnResource:
        attributes = node.attributes
        return self._cfn(
            node,
            "AWS::EC2::SecurityGroup",
            {
                "GroupName": attributes["name"],
                "GroupDescription": attributes.get("description") or attributes["name"],
                "VpcId": self._render(attributes["vpc_id"]),
                "SecurityGroupIngress": self._rules(attributes.get("ingress", []), egress=False) or None,
                "SecurityGroupEgress": self._rules(attributes.get("egress", []), egress=True) or None,
            },
        )

    def _build_db_subnet_group(self, node: ResourceNode) -> CfnResource:
        attributes = node.attributes
        return self._cfn(
            node,
            "AWS::RDS::DBSubnetGroup",
            {
                "DBSubnetGroupName": attributes["name"],
                "DBSubnetGroupDescription": attributes.get("description") or attributes["name"],
                "SubnetIds": self._render(attributes["subnet_ids"]),
            },
        )

    def _build_db_parameter_group(self, node: ResourceNode) -> CfnResource:
        attributes = node.attributes
        return self._cfn(
            node,
            "AWS::RDS::DBParameterGroup",
            {
                "DBParameterGroupName": attributes["name"],
                "Description": attributes.get("description") or attributes["name"],
                "Family": attributes["family"],
            },
        )

    def _build_secret(self, node: ResourceNode) -> CfnResource:
        """The engine generates the value once; it never appears in the template."""
        attributes = node.attributes
        return self._cfn(
            node,
            "AWS::SecretsManager::Secret",
            {
                "Name": attributes["name"],
                "Description": f"Generated credential (handle {attributes['handle_id']})",
                "GenerateSecretString": generate_secret_string(attributes["policy"]),
            },
        )

    def _build_db_instance(self, node: ResourceNode) -> CfnResource:
        attributes = node.attributes
        db_instance = self._cfn(
            node,
            "AWS::RDS::DBInstance",
            {
                "DBInstanceIdentifier": attributes["identifier"],
                "Engine": attributes["engine"],
                "EngineVersion": attributes["engine_version"],
                "DBInstanceClass": attributes["instance_class"],
                "AllocatedStorage": str(attributes["allocated_storage"]),
                "StorageEncrypted": attributes.get("storage_encrypted"),
                "MultiAZ": attributes.get("multi_az"),
                "DBName": attributes["db_name"],
                "MasterUsername": attributes["username"],
                "MasterUserPassword": self._render(attributes["password"]),
                "Port": str(attributes["port"]),
                "DBSubnetGroupName": self._render(attributes["db_subnet_group_name"]),
                "VPCSecurityGroups": self._render(attributes["vpc_security_group_ids"]),
                "DBParameterGroupName": self._render(attributes["parameter_group_name"]),
                "BackupRetentionPeriod": attributes.get("backup_retention_period"),
            },
        )
        if attributes.get("skip_final_snapshot"):
            db_instance.apply_removal_policy(RemovalPolicy.DESTROY)
        return db_instance

    def _build_bucket(self, node: ResourceNode) -> CfnResource:
        return self._cfn(
            node,
            "AWS::S3::Bucket",
            {
                "BucketName": node.attributes["bucket_name"],
                "PublicAccessBlockConfiguration": {
                    "BlockPublicAcls": True,
                    "BlockPublicPolicy": True,
                    "IgnorePublicAcls": True,
                    "RestrictPublicBuckets": True,
                },
                "BucketEncryption": {
                    "ServerSideEncryptionConfiguration": [
                        {"ServerSideEncryptionByDefault": {"SSEAlgorithm": "AES256"}}
                    ]
                },
            },
        )

    def _build_artifact_upload(self, node: ResourceNode) -> s3_deployment.BucketDeployment:
        """Upload the staged archive directory under the version prefix.

        The staging directory holds only ``<hash>.zip``, so the object lands at
        ``<version>/<hash>.zip``, the key recorded on the node.
        """
        attributes = node.attributes
        logical_id = StackContext.build_resource_id(node.id)
        destination = s3.Bucket.from_bucket_name(
            self, f"{logical_id}Destination", self._render(attributes["bucket"])
        )
        return s3_deployment.BucketDeployment(
            self,
            logical_id,
            sources=[s3_deployment.Source.asset(str(Path(attributes["source"]).parent))],
            destination_bucket=destination,
            destination_key_prefix=attributes["version"],
            extract=True,
            prune=False,
        )

    def _build_role(self, node: ResourceNode) -> CfnResource:
        return self._cfn(
            node,
            "AWS::IAM::Role",
            {
                "RoleName": node.attributes["name"],
                "AssumeRolePolicyDocument": node.attributes["assume_role_policy"],
            },
        )

    def _attach_managed_policy(self, node: ResourceNode) -> None:
        role_reference = node.attributes["role"]
        role = self.resources[role_reference.node_id]
        arns = self._managed_policy_arns.setdefault(role_reference.node_id, [])
        arns.append(node.attributes["policy_arn"])
        role.add_property_override("ManagedPolicyArns", list(arns))

    def _build_function(self, node: ResourceNode) -> CfnResource:
        attributes = node.attributes
        vpc_config = attributes.get("vpc_config")
        return self._cfn(
            node,
            "AWS::Lambda::Function",
            {
                "FunctionName": attributes["function_name"],
                "Handler": attributes["handler"],
                "Runtime": attributes["runtime"],
                "Role": self._render(attributes["role"]),
                "Timeout": attributes.get("timeout"),
                "Code": {
                    "S3Bucket": self._render(attributes["s3_bucket"]),
                    "S3Key": self._render(attributes["s3_key"]),
                },
                "VpcConfig": {
                    "SubnetIds": self._render(vpc_config.subnet_ids),
                    "SecurityGroupIds": self._render(vpc_config.security_group_ids),
                }
                if vpc_config is not None
                else None,
                "Environment": {"Variables": self._render(attributes["environment"])}
                if attributes.get("environment")
                else None,
            },
        )

    def _build_http_api(self, node: ResourceNode) -> CfnResource:
        attributes = node.attributes
        return self._cfn(
            node,
            "AWS::ApiGatewayV2::Api",
            {
                "Name": attributes["name"],
                "Description": attributes.get("description"),
                "ProtocolType": attributes["protocol_type"],
                "Target": self._render(attributes["target"]),
            },
        )

    def _build_permission(self, node: ResourceNode) -> CfnResource:
        attributes = node.attributes
        return self._cfn(
            node,
            "AWS::Lambda::Permission",
            {
                "FunctionName": self._render(attributes["function_name"]),
                "Action": attributes["action"],
                "Principal": attributes["principal"],
                "SourceArn": self._render(attributes["source_arn"]),
            },
        )

    def _build_output(self, node: ResourceNode) -> CfnOutput:
        return CfnOutput(
            self,
            StackContext.build_resource_id(node.id),
            value=self._render(node.attributes["value"]),
            description=node.attributes.get("description"),
        )
