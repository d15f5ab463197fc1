"""
This module defines the data structures for the single-host deployment configuration.
These dataclasses provide a schema for config.yaml and carry the environment overrides
(target account and region) read at graph-build time.
"""

import os
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import yaml

REQUIRED_KEYS = ["team", "service", "environment"]

@dataclass
class NetworkConfig:
    cidr: str = "10.0.0.0/16"
    az_count: int = 2
    subnet_prefix: int = 24

@dataclass
class InstanceConfig:
    instance_type: str = "t3.micro"
    # SSM public parameter for the latest Amazon Linux 2 image
    image_parameter: str = "/aws/service/ami-amazon-linux-latest/amzn2-ami-hvm-x86_64-gp2"

@dataclass
class ApplicationConfig:
    name: str = "rust-elm"
    description: str = "Rust Elm WebSocket Server"
    port: int = 3000
    admin_port: int = 22
    user: str = "ec2-user"
    restart_sec: int = 10
    start_on_first_boot: bool = False

@dataclass
class DeploymentConfig:
    team: str
    service: str
    environment: str
    region: Optional[str] = None
    account: Optional[str] = None
    tags: Dict[str, str] = field(default_factory=dict)
    network: NetworkConfig = field(default_factory=NetworkConfig)
    instance: InstanceConfig = field(default_factory=InstanceConfig)
    application: ApplicationConfig = field(default_factory=ApplicationConfig)

    @property
    def deployment_id(self) -> str:
        return f"{self.team}-{self.service}-{self.environment}".lower()

def _section(cls, data: Optional[Dict[str, Any]]):
    data = data or {}
    known = set(cls.__dataclass_fields__)
    unknown = set(data) - known
    if unknown:
        raise ValueError(f"Unknown keys for {cls.__name__}: {sorted(unknown)}")
    return cls(**data)

def from_dict(config_data: Dict[str, Any], environ: Optional[Dict[str, str]] = None) -> DeploymentConfig:
    """Build a DeploymentConfig, letting the environment override account and region."""
    if not isinstance(config_data, dict):
        raise ValueError("Configuration must be a mapping")
    for key in REQUIRED_KEYS:
        if key not in config_data:
            raise ValueError(f"Missing required configuration key: {key}")

    environ = os.environ if environ is None else environ
    region = environ.get("AWS_REGION") or environ.get("AWS_DEFAULT_REGION") or config_data.get("region")
    account = environ.get("AWS_ACCOUNT_ID") or config_data.get("account")

    return DeploymentConfig(
        team=str(config_data["team"]).strip(),
        service=str(config_data["service"]).strip(),
        environment=str(config_data["environment"]).strip(),
        region=region or None,
        account=str(account) if account else None,
        tags=dict(config_data.get("tags") or {}),
        network=_section(NetworkConfig, config_data.get("network")),
        instance=_section(InstanceConfig, config_data.get("instance")),
        application=_section(ApplicationConfig, config_data.get("application")),
    )

def load_config(file_path: str, environ: Optional[Dict[str, str]] = None) -> DeploymentConfig:
    """Load and validate YAML configuration from the given file path."""
    with open(file_path, "r") as file:
        config_data = yaml.safe_load(file)
    return from_dict(config_data, environ)
