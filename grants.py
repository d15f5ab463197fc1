"""
Least-privilege policy documents for the instance identity.

The read grant mirrors the usual bucket read set (object and bucket getters
plus listing) scoped to a single bucket and its objects. `is_allowed` gives a
small allow-list evaluation of a policy document so effective permissions can
be checked without calling the provider.
"""

import json
from fnmatch import fnmatchcase
from typing import Any, Dict, List

EC2_SERVICE_PRINCIPAL = "ec2.amazonaws.com"
SSM_MANAGED_POLICY = "AmazonSSMManagedInstanceCore"

READ_ACTIONS = ["s3:GetObject*", "s3:GetBucket*", "s3:List*"]

def managed_policy_arn(name: str) -> str:
    return f"arn:aws:iam::aws:policy/{name}"

def bucket_arn(bucket_name: str) -> str:
    return f"arn:aws:s3:::{bucket_name}"

def assume_role_policy(service: str = EC2_SERVICE_PRINCIPAL) -> str:
    return json.dumps({
        "Version": "2012-10-17",
        "Statement": [{
            "Effect": "Allow",
            "Principal": {"Service": service},
            "Action": "sts:AssumeRole",
        }],
    })

def read_policy_document(store_arn: str) -> Dict[str, Any]:
    """Read-only access to exactly one bucket and the objects in it."""
    return {
        "Version": "2012-10-17",
        "Statement": [{
            "Effect": "Allow",
            "Action": list(READ_ACTIONS),
            "Resource": [store_arn, f"{store_arn}/*"],
        }],
    }

def _as_list(value: Any) -> List[str]:
    if isinstance(value, str):
        return [value]
    return list(value or [])

def is_allowed(document: Dict[str, Any], action: str, resource: str) -> bool:
    """Return True if an Allow statement matches and no Deny statement does."""
    allowed = False
    for statement in _as_list_of_statements(document):
        actions = _as_list(statement.get("Action"))
        resources = _as_list(statement.get("Resource"))
        if not any(fnmatchcase(action, pattern) for pattern in actions):
            continue
        if not any(fnmatchcase(resource, pattern) for pattern in resources):
            continue
        if statement.get("Effect") == "Deny":
            return False
        if statement.get("Effect") == "Allow":
            allowed = True
    return allowed

def _as_list_of_statements(document: Dict[str, Any]) -> List[Dict[str, Any]]:
    statements = document.get("Statement", [])
    if isinstance(statements, dict):
        return [statements]
    return list(statements)
