import json
import re
from typing import Any, Dict, List, Optional

import pulumi
import pulumi_aws as aws

from bootstrap import validate_bucket_name
from config import DeploymentConfig
from graph import (
    ANY_IPV4,
    ArtifactStore,
    FirewallPolicy,
    GraphError,
    Instance,
    InstanceIdentity,
    Network,
    Node,
    Outputs,
    ResourceGraph,
)
from grants import assume_role_policy, managed_policy_arn, read_policy_document
from outputs import export_outputs

# length of the random suffix pulumi adds to auto-named resources
AUTONAME_SUFFIX_LENGTH = 8

# Consolidated list of common AWS region abbreviations
AWS_REGION_ABBREVIATIONS = {
    "af-south-1": "afs1",
    "ap-east-1": "ape1",
    "ap-northeast-1": "apne1",
    "ap-northeast-2": "apne2",
    "ap-northeast-3": "apne3",
    "ap-south-1": "aps1",
    "ap-southeast-1": "apse1",
    "ap-southeast-2": "apse2",
    "ca-central-1": "cac1",
    "eu-central-1": "euc1",
    "eu-north-1": "eun1",
    "eu-south-1": "eus1",
    "eu-west-1": "euw1",
    "eu-west-2": "euw2",
    "eu-west-3": "euw3",
    "me-south-1": "mes1",
    "sa-east-1": "sae1",
    "us-east-1": "use1",
    "us-east-2": "use2",
    "us-west-1": "usw1",
    "us-west-2": "usw2",
}

def to_snake_case(name: str) -> str:
    return re.sub(r'(?<!^)(?=[A-Z])', '_', name).lower()

def ingress_args(policy: FirewallPolicy) -> List[aws.ec2.SecurityGroupIngressArgs]:
    return [
        aws.ec2.SecurityGroupIngressArgs(
            protocol=rule.protocol,
            from_port=rule.port,
            to_port=rule.port,
            cidr_blocks=[rule.source],
            description=rule.description,
        )
        for rule in policy.rules
    ]

def egress_args(policy: FirewallPolicy) -> List[aws.ec2.SecurityGroupEgressArgs]:
    if not policy.allow_all_outbound:
        return []
    return [
        aws.ec2.SecurityGroupEgressArgs(
            protocol="-1",
            from_port=0,
            to_port=0,
            cidr_blocks=[ANY_IPV4],
            description="Allow all outbound traffic by default",
        )
    ]

class AWSResourceBuilder:
    def __init__(self, config: DeploymentConfig):
        self.config = config
        self.resources: Dict[str, Any] = {}
        self.children: Dict[str, Dict[str, Any]] = {}
        self.exports: Dict[str, pulumi.Output] = {}
        self.provider: Optional[aws.Provider] = None

    def get_abbreviation(self, region: str) -> str:
        return AWS_REGION_ABBREVIATIONS.get(region.lower(), region.split("-")[0].lower())

    def generate_resource_name(self, base_name: str) -> str:
        parts = [self.config.team, self.config.service, self.config.environment]
        if self.config.region:
            parts.append(self.get_abbreviation(self.config.region))
        parts.append(base_name)
        return "-".join(part.strip() for part in parts).lower()

    def tags(self, name: str) -> Dict[str, str]:
        tags = {
            "team": self.config.team,
            "service": self.config.service,
            "environment": self.config.environment,
        }
        tags.update(self.config.tags)
        tags["Name"] = name
        return tags

    def _create_provider(self) -> Optional[aws.Provider]:
        # without an explicit account or region the ambient provider is used
        args: Dict[str, Any] = {}
        if self.config.region:
            args["region"] = self.config.region
        if self.config.account:
            args["allowed_account_ids"] = [self.config.account]
        if not args:
            return None
        pulumi.log.info(f"Using explicit AWS provider with {args}")
        return aws.Provider(self.generate_resource_name("provider"), **args)

    def opts(self, **kwargs) -> pulumi.ResourceOptions:
        if self.provider is not None:
            kwargs.setdefault("provider", self.provider)
        return pulumi.ResourceOptions(**kwargs)

    def invoke_opts(self) -> Optional[pulumi.InvokeOptions]:
        if self.provider is None:
            return None
        return pulumi.InvokeOptions(provider=self.provider)

    def resolve(self, node: Node) -> Any:
        if node.name not in self.resources:
            raise ValueError(f"Referenced resource '{node.name}' not found.")
        return self.resources[node.name]

    def validate(self, graph: ResourceGraph) -> None:
        """Check generated names before any resource is created."""
        for node in graph.nodes.values():
            if not isinstance(node, ArtifactStore):
                continue
            # auto-naming appends "-" and seven random characters
            candidate = self.generate_resource_name(node.name) + "-" + "0" * (AUTONAME_SUFFIX_LENGTH - 1)
            try:
                validate_bucket_name(candidate)
            except ValueError:
                raise GraphError(f"Bucket name for '{node.name}' is invalid once auto-named: {candidate!r}") from None

    def build(self, graph: ResourceGraph):
        self.validate(graph)
        if self.provider is None:
            self.provider = self._create_provider()
        for node in graph.topological_order():
            builder = getattr(self, f"build_{to_snake_case(node.kind)}", None)
            if builder is None:
                pulumi.log.warn(f"No builder for resource kind '{node.kind}'. Skipping '{node.name}'.")
                continue
            self.resources[node.name] = builder(node)
            pulumi.log.info(f"Created resource: {node.name} ({node.kind})")

    def build_network(self, node: Network) -> aws.ec2.Vpc:
        name = self.generate_resource_name(node.name)
        vpc = aws.ec2.Vpc(
            name,
            cidr_block=node.cidr,
            enable_dns_hostnames=True,
            enable_dns_support=True,
            tags=self.tags(name),
            opts=self.opts(),
        )
        gateway = aws.ec2.InternetGateway(
            f"{name}-igw",
            vpc_id=vpc.id,
            tags=self.tags(f"{name}-igw"),
            opts=self.opts(),
        )
        route_table = aws.ec2.RouteTable(
            f"{name}-public",
            vpc_id=vpc.id,
            routes=[aws.ec2.RouteTableRouteArgs(cidr_block=ANY_IPV4, gateway_id=gateway.id)],
            tags=self.tags(f"{name}-public"),
            opts=self.opts(),
        )
        zones = aws.get_availability_zones_output(state="available", opts=self.invoke_opts())

        subnets = []
        for index, cidr in enumerate(node.subnet_cidrs()):
            subnet_name = f"{name}-public-{index + 1}"
            subnet = aws.ec2.Subnet(
                subnet_name,
                vpc_id=vpc.id,
                cidr_block=cidr,
                availability_zone=zones.apply(lambda z, i=index: z.names[i]),
                map_public_ip_on_launch=True,
                tags=self.tags(subnet_name),
                opts=self.opts(),
            )
            aws.ec2.RouteTableAssociation(
                f"{subnet_name}-rt",
                subnet_id=subnet.id,
                route_table_id=route_table.id,
                opts=self.opts(),
            )
            subnets.append(subnet)

        self.children[node.name] = {
            "internet_gateway": gateway,
            "route_table": route_table,
            "subnets": subnets,
        }
        return vpc

    def build_firewall_policy(self, node: FirewallPolicy) -> aws.ec2.SecurityGroup:
        name = self.generate_resource_name(node.name)
        vpc = self.resolve(node.network)
        return aws.ec2.SecurityGroup(
            name,
            vpc_id=vpc.id,
            description=node.description or f"Security group {name}",
            ingress=ingress_args(node),
            egress=egress_args(node),
            tags=self.tags(name),
            opts=self.opts(),
        )

    def build_artifact_store(self, node: ArtifactStore) -> aws.s3.Bucket:
        name = self.generate_resource_name(node.name)
        bucket = aws.s3.Bucket(
            name,
            force_destroy=node.auto_empty,
            tags=self.tags(name),
            opts=self.opts(retain_on_delete=node.removal_policy != "destroy"),
        )
        public_access = aws.s3.BucketPublicAccessBlock(
            f"{name}-public-access",
            bucket=bucket.id,
            block_public_acls=True,
            block_public_policy=True,
            ignore_public_acls=True,
            restrict_public_buckets=True,
            opts=self.opts(),
        )
        self.children[node.name] = {"public_access_block": public_access}
        return bucket

    def build_instance_identity(self, node: InstanceIdentity) -> aws.iam.Role:
        name = self.generate_resource_name(node.name)
        role = aws.iam.Role(
            name,
            assume_role_policy=assume_role_policy(node.service_principal),
            tags=self.tags(name),
            opts=self.opts(),
        )
        attachments = [
            aws.iam.RolePolicyAttachment(
                f"{name}-{policy.lower()}",
                role=role.name,
                policy_arn=managed_policy_arn(policy),
                opts=self.opts(),
            )
            for policy in node.managed_policies
        ]
        grants = []
        for store in node.read_grants:
            bucket = self.resolve(store)
            grants.append(aws.iam.RolePolicy(
                f"{name}-read-{store.name}",
                role=role.id,
                policy=bucket.arn.apply(lambda arn: json.dumps(read_policy_document(arn))),
                opts=self.opts(),
            ))
        profile = aws.iam.InstanceProfile(
            f"{name}-profile",
            role=role.name,
            tags=self.tags(f"{name}-profile"),
            opts=self.opts(),
        )
        self.children[node.name] = {
            "attachments": attachments,
            "grants": grants,
            "instance_profile": profile,
        }
        return role

    def build_instance(self, node: Instance) -> aws.ec2.Instance:
        name = self.generate_resource_name(node.name)
        subnet = self.children[node.network.name]["subnets"][node.subnet_index]
        security_group = self.resolve(node.firewall)
        self.resolve(node.identity)
        identity = self.children[node.identity.name]
        bucket = self.resolve(node.store)

        image = aws.ssm.get_parameter_output(name=node.image_parameter, opts=self.invoke_opts())
        pulumi.log.info(f"Instance '{name}' bootstrap steps: {', '.join(node.bootstrap.step_names())}")

        return aws.ec2.Instance(
            name,
            ami=image.apply(lambda parameter: parameter.value),
            instance_type=node.instance_type,
            subnet_id=subnet.id,
            vpc_security_group_ids=[security_group.id],
            iam_instance_profile=identity["instance_profile"].name,
            associate_public_ip_address=True,
            user_data=bucket.bucket.apply(node.bootstrap.render),
            tags=self.tags(name),
            # the read grant must be in place before the instance boots
            opts=self.opts(depends_on=identity["grants"] + identity["attachments"]),
        )

    def build_outputs(self, node: Outputs) -> Dict[str, pulumi.Output]:
        instance = self.resolve(node.instance)
        bucket = self.resolve(node.store)
        self.exports = export_outputs(instance, bucket, node.instance.service_port)
        return self.exports
