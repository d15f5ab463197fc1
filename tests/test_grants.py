"""Tests for least-privilege policy documents."""

import json

from grants import (
    assume_role_policy,
    bucket_arn,
    is_allowed,
    managed_policy_arn,
    read_policy_document,
)

STORE = bucket_arn("deploy-abc123")


class TestReadGrant:
    """Effective permissions of the artifact read grant."""

    def test_read_allowed(self) -> None:
        """Object reads and listing on the store should be allowed."""
        document = read_policy_document(STORE)
        assert is_allowed(document, "s3:GetObject", f"{STORE}/rust-elm")
        assert is_allowed(document, "s3:ListBucket", STORE)
        assert is_allowed(document, "s3:GetBucketLocation", STORE)

    def test_write_denied(self) -> None:
        """Writes should not be granted."""
        document = read_policy_document(STORE)
        assert not is_allowed(document, "s3:PutObject", f"{STORE}/rust-elm")
        assert not is_allowed(document, "s3:PutBucketPolicy", STORE)

    def test_delete_denied(self) -> None:
        """Deletes should not be granted."""
        document = read_policy_document(STORE)
        assert not is_allowed(document, "s3:DeleteObject", f"{STORE}/rust-elm")
        assert not is_allowed(document, "s3:DeleteBucket", STORE)

    def test_scoped_to_single_store(self) -> None:
        """Other buckets, including name-prefix lookalikes, should be denied."""
        document = read_policy_document(STORE)
        assert not is_allowed(document, "s3:GetObject", f"{bucket_arn('other')}/rust-elm")
        assert not is_allowed(document, "s3:GetObject", f"{STORE}-evil/rust-elm")

    def test_explicit_deny_wins(self) -> None:
        """A matching Deny statement should override an Allow."""
        document = read_policy_document(STORE)
        document["Statement"].append(
            {"Effect": "Deny", "Action": "s3:GetObject", "Resource": f"{STORE}/secret/*"}
        )
        assert not is_allowed(document, "s3:GetObject", f"{STORE}/secret/key")
        assert is_allowed(document, "s3:GetObject", f"{STORE}/rust-elm")


class TestIdentityPolicies:
    """Tests for trust and managed policy helpers."""

    def test_trust_limited_to_compute(self) -> None:
        """Only the EC2 service should assume the role."""
        document = json.loads(assume_role_policy())
        (statement,) = document["Statement"]
        assert statement["Principal"] == {"Service": "ec2.amazonaws.com"}
        assert statement["Action"] == "sts:AssumeRole"

    def test_managed_policy_arn(self) -> None:
        """Managed policy names should map to AWS-owned ARNs."""
        assert managed_policy_arn("AmazonSSMManagedInstanceCore") == (
            "arn:aws:iam::aws:policy/AmazonSSMManagedInstanceCore"
        )
