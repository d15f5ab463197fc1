"""Post-deployment values published as stack outputs."""

from typing import Dict, Tuple

import pulumi

def application_url(address: str, port: int = 3000) -> str:
    return f"http://{address}:{port}"

def collect_outputs(instance, bucket, port: int = 3000) -> Dict[str, Tuple[pulumi.Output, str]]:
    """Map output names to (value, description) pairs for the realized resources."""
    return {
        "InstanceId": (instance.id, "EC2 Instance ID"),
        "PublicIp": (instance.public_ip, "Public IP address"),
        "ApplicationUrl": (
            instance.public_ip.apply(lambda ip: application_url(ip, port)),
            "Application URL",
        ),
        "DeploymentBucket": (bucket.bucket, "S3 bucket for deployment artifacts"),
    }

def export_outputs(instance, bucket, port: int = 3000) -> Dict[str, pulumi.Output]:
    exported = {}
    for name, (value, description) in collect_outputs(instance, bucket, port).items():
        pulumi.export(name, value)
        pulumi.log.info(f"Exporting output '{name}': {description}")
        exported[name] = value
    return exported
