"""Tests for realizing the resource graph with pulumi_aws, using Pulumi mocks."""

import json

import pulumi
import pytest

from awsclassic import AWSResourceBuilder, egress_args, ingress_args
from config import from_dict
from graph import GraphError, build_graph
from grants import is_allowed

PUBLIC_IP = "203.0.113.10"
AMI_ID = "ami-0123456789abcdef0"


class DeployMocks(pulumi.runtime.Mocks):
    def new_resource(self, args: pulumi.runtime.MockResourceArgs):
        outputs = dict(args.inputs)
        if args.typ in ("aws:s3/bucket:Bucket", "aws:s3/bucketV2:BucketV2"):
            outputs["bucket"] = args.name
            outputs["arn"] = f"arn:aws:s3:::{args.name}"
        elif args.typ == "aws:ec2/instance:Instance":
            outputs["publicIp"] = PUBLIC_IP
        elif args.typ == "aws:iam/role:Role":
            outputs["name"] = args.name
        return [f"{args.name}_id", outputs]

    def call(self, args: pulumi.runtime.MockCallArgs):
        if args.token == "aws:index/getAvailabilityZones:getAvailabilityZones":
            return {
                "id": "us-east-1",
                "names": ["us-east-1a", "us-east-1b", "us-east-1c"],
                "zoneIds": ["use1-az1", "use1-az2", "use1-az3"],
            }
        if args.token == "aws:ssm/getParameter:getParameter":
            return {
                "id": args.args["name"],
                "name": args.args["name"],
                "type": "String",
                "value": AMI_ID,
            }
        return {}


pulumi.runtime.set_mocks(DeployMocks(), preview=False)

CONFIG = from_dict({"team": "acme", "service": "web", "environment": "test"}, environ={})
GRAPH = build_graph(CONFIG)
builder = AWSResourceBuilder(CONFIG)
builder.build(GRAPH)


class TestNaming:
    """Tests for resource name generation."""

    def test_name_without_region(self) -> None:
        """Without a region the abbreviation is omitted."""
        assert builder.generate_resource_name("network") == "acme-web-test-network"

    def test_region_abbreviation(self) -> None:
        """Known regions use their short form; unknown ones their prefix."""
        assert builder.get_abbreviation("us-east-1") == "use1"
        assert builder.get_abbreviation("eu-west-2") == "euw2"
        assert builder.get_abbreviation("mx-central-1") == "mx"

    def test_tags(self) -> None:
        """Every resource is tagged with the deployment identity and its name."""
        tags = builder.tags("acme-web-test-network")
        assert tags["Name"] == "acme-web-test-network"
        assert tags["environment"] == "test"


class TestSecurityGroupArgs:
    """Tests for the firewall translation."""

    def test_ingress(self) -> None:
        """Only the service and admin ports are opened."""
        rules = ingress_args(GRAPH.get("firewall"))
        assert [(rule.protocol, rule.from_port, rule.to_port, rule.cidr_blocks) for rule in rules] == [
            ("tcp", 3000, 3000, ["0.0.0.0/0"]),
            ("tcp", 22, 22, ["0.0.0.0/0"]),
        ]

    def test_egress_unrestricted(self) -> None:
        """Outbound traffic is unrestricted."""
        (rule,) = egress_args(GRAPH.get("firewall"))
        assert rule.protocol == "-1"
        assert rule.cidr_blocks == ["0.0.0.0/0"]


class TestBuiltResources:
    """Tests for which resources the builder creates."""

    def test_every_node_realized(self) -> None:
        """Each graph node has a realized counterpart."""
        assert set(builder.resources) == set(GRAPH.nodes)

    def test_two_public_subnets(self) -> None:
        """One subnet per availability zone."""
        assert len(builder.children["network"]["subnets"]) == 2

    def test_no_explicit_provider(self) -> None:
        """Without account or region the ambient provider is used."""
        assert builder.provider is None


@pulumi.runtime.test
def test_bucket_auto_empties():
    def check(force_destroy):
        assert force_destroy is True

    return builder.resources["artifacts"].force_destroy.apply(check)


@pulumi.runtime.test
def test_subnets_map_public_ips():
    def check(values):
        assert values == [True, True]

    subnets = builder.children["network"]["subnets"]
    return pulumi.Output.all(*[subnet.map_public_ip_on_launch for subnet in subnets]).apply(check)


@pulumi.runtime.test
def test_read_grant_is_scoped_to_bucket():
    def check(args):
        policy, arn = args
        document = json.loads(policy)
        assert is_allowed(document, "s3:GetObject", f"{arn}/rust-elm")
        assert not is_allowed(document, "s3:PutObject", f"{arn}/rust-elm")
        assert not is_allowed(document, "s3:DeleteObject", f"{arn}/rust-elm")
        assert not is_allowed(document, "s3:GetObject", "arn:aws:s3:::another-bucket/rust-elm")

    (grant,) = builder.children["instance-role"]["grants"]
    return pulumi.Output.all(grant.policy, builder.resources["artifacts"].arn).apply(check)


@pulumi.runtime.test
def test_instance_user_data_embeds_bucket():
    def check(args):
        user_data, bucket = args
        assert user_data.startswith("#!/bin/bash\nset -e\n")
        assert f"aws s3 cp s3://{bucket}/rust-elm /home/ec2-user/app/rust-elm" in user_data
        assert f"aws s3 sync s3://{bucket}/assets/ /home/ec2-user/app/assets/" in user_data
        assert "systemctl enable rust-elm" in user_data

    instance = builder.resources["instance"]
    return pulumi.Output.all(instance.user_data, builder.resources["artifacts"].bucket).apply(check)


@pulumi.runtime.test
def test_instance_settings():
    def check(args):
        ami, instance_type, public = args
        assert ami == AMI_ID
        assert instance_type == "t3.micro"
        assert public is True

    instance = builder.resources["instance"]
    return pulumi.Output.all(
        instance.ami, instance.instance_type, instance.associate_public_ip_address
    ).apply(check)


@pulumi.runtime.test
def test_outputs_expose_application_url():
    def check(args):
        url, bucket = args
        assert url == f"http://{PUBLIC_IP}:3000"
        assert bucket == "acme-web-test-artifacts"

    return pulumi.Output.all(
        builder.exports["ApplicationUrl"], builder.exports["DeploymentBucket"]
    ).apply(check)


class TestBucketNamePreflight:
    """Generated bucket names are checked before any resource is created."""

    @pytest.mark.parametrize(
        "overrides",
        [
            {"team": "my_team"},
            {"service": "s" * 60},
        ],
    )
    def test_invalid_auto_name_fails_before_build(self, overrides) -> None:
        """Underscores or an over-long name fail at graph build time."""
        data = {"team": "acme", "service": "web", "environment": "test"}
        data.update(overrides)
        config = from_dict(data, environ={})
        graph = build_graph(config)
        failing = AWSResourceBuilder(config)
        with pytest.raises(GraphError, match="artifacts"):
            failing.build(graph)
        assert failing.resources == {}
        assert failing.provider is None

    def test_valid_auto_name_passes(self) -> None:
        """The default deployment name leaves room for the suffix."""
        AWSResourceBuilder(CONFIG).validate(GRAPH)
