"""
First-boot bootstrap sequence for the instance.

The sequence is a list of step variants. Each step renders to plain shell
commands; the rendered user data runs under `set -e`, so the first failing
step halts everything after it. Every step is safe to run again on an
already-configured host: directories are created with `mkdir -p`, files are
overwritten in full, and `systemctl enable` is a no-op once enabled.

The only value substituted at render time is the artifact bucket name. Names
and paths in the layout are rendered unquoted, so they are checked on
construction.
"""

import re
from dataclasses import dataclass, field
from typing import List, Optional

BUCKET_NAME_PATTERN = re.compile(r"^[a-z0-9][a-z0-9.-]{1,61}[a-z0-9]$")
NAME_PATTERN = re.compile(r"^[a-z_][a-z0-9_-]*$")
PATH_PATTERN = re.compile(r"^/[A-Za-z0-9._/-]*$")

def validate_bucket_name(bucket_name: str) -> str:
    if not isinstance(bucket_name, str) or not BUCKET_NAME_PATTERN.fullmatch(bucket_name):
        raise ValueError(f"Invalid artifact bucket name: {bucket_name!r}")
    return bucket_name

@dataclass(frozen=True)
class BootstrapLayout:
    user: str = "ec2-user"
    home: str = "/home/ec2-user"
    unit_dir: str = "/etc/systemd/system"
    service_name: str = "rust-elm"
    binary_name: str = "rust-elm"

    def __post_init__(self):
        # values are rendered unquoted into shell commands and unit keys
        for attr in ("user", "service_name", "binary_name"):
            value = getattr(self, attr)
            if not isinstance(value, str) or not NAME_PATTERN.fullmatch(value):
                raise ValueError(f"Invalid {attr}: {value!r}")
        for attr in ("home", "unit_dir"):
            value = getattr(self, attr)
            if not isinstance(value, str) or not PATH_PATTERN.fullmatch(value):
                raise ValueError(f"Invalid {attr}: {value!r}")

    @property
    def app_dir(self) -> str:
        return f"{self.home}/app"

    @property
    def redeploy_script(self) -> str:
        return f"{self.home}/deploy.sh"

    @property
    def unit_file(self) -> str:
        return f"{self.unit_dir}/{self.service_name}.service"

    @property
    def binary_path(self) -> str:
        return f"{self.app_dir}/{self.binary_name}"

    @property
    def owner(self) -> str:
        return f"{self.user}:{self.user}"

def _heredoc(path: str, body: List[str], delimiter: str) -> List[str]:
    # quoted delimiter: the body is written verbatim, no expansion
    return [f"cat > {path} << '{delimiter}'", *body, delimiter]

@dataclass(frozen=True)
class ServiceUnit:
    layout: BootstrapLayout
    description: str = "Rust Elm WebSocket Server"
    restart_sec: int = 10

    def __post_init__(self):
        if not isinstance(self.description, str) or any(ord(char) < 32 or ord(char) == 127 for char in self.description):
            raise ValueError(f"Invalid unit description: {self.description!r}")
        if not isinstance(self.restart_sec, int) or self.restart_sec < 1:
            raise ValueError(f"Invalid restart delay: {self.restart_sec!r}")

    def lines(self) -> List[str]:
        return [
            "[Unit]",
            f"Description={self.description}",
            "Wants=network-online.target",
            "After=network-online.target",
            "",
            "[Service]",
            "Type=simple",
            f"User={self.layout.user}",
            f"WorkingDirectory={self.layout.app_dir}",
            f"ExecStart={self.layout.binary_path}",
            "Restart=always",
            f"RestartSec={self.restart_sec}",
            "",
            "[Install]",
            "WantedBy=multi-user.target",
        ]

    def render(self) -> str:
        return "\n".join(self.lines()) + "\n"

@dataclass(frozen=True)
class RedeployScript:
    """Helper left on the host for later deployments; not run at first boot."""

    layout: BootstrapLayout

    def lines(self, bucket_name: str) -> List[str]:
        bucket = validate_bucket_name(bucket_name)
        layout = self.layout
        return [
            "#!/bin/bash",
            "set -e",
            "",
            "# Download latest deployment from S3",
            f"aws s3 cp s3://{bucket}/{layout.binary_name} {layout.binary_path}",
            f"aws s3 sync s3://{bucket}/assets/ {layout.app_dir}/assets/",
            "",
            "chmod +x " + layout.binary_path,
            "",
            "# Restart only a running service",
            f"if systemctl is-active --quiet {layout.service_name}; then",
            f"  sudo systemctl restart {layout.service_name}",
            "fi",
        ]

    def render(self, bucket_name: str) -> str:
        return "\n".join(self.lines(bucket_name)) + "\n"

@dataclass(frozen=True)
class Step:
    layout: BootstrapLayout

    @property
    def name(self) -> str:
        return type(self).__name__

    def commands(self, bucket_name: str) -> List[str]:
        raise NotImplementedError

@dataclass(frozen=True)
class UpdatePackages(Step):
    def commands(self, bucket_name: str) -> List[str]:
        return ["yum update -y"]

@dataclass(frozen=True)
class InstallTooling(Step):
    package: str = "awscli"

    def commands(self, bucket_name: str) -> List[str]:
        return [f"yum install -y {self.package}"]

@dataclass(frozen=True)
class PrepareFilesystem(Step):
    def commands(self, bucket_name: str) -> List[str]:
        return [
            f"mkdir -p {self.layout.app_dir}",
            f"chown {self.layout.owner} {self.layout.app_dir}",
        ]

@dataclass(frozen=True)
class WriteRedeployScript(Step):
    def commands(self, bucket_name: str) -> List[str]:
        script = RedeployScript(self.layout)
        path = self.layout.redeploy_script
        return [
            *_heredoc(path, script.lines(bucket_name), "REDEPLOY_EOF"),
            f"chmod +x {path}",
            f"chown {self.layout.owner} {path}",
        ]

@dataclass(frozen=True)
class WriteServiceUnit(Step):
    unit: Optional[ServiceUnit] = None

    def commands(self, bucket_name: str) -> List[str]:
        unit = self.unit or ServiceUnit(self.layout)
        return [
            f"mkdir -p {self.layout.unit_dir}",
            *_heredoc(self.layout.unit_file, unit.lines(), "UNIT_EOF"),
        ]

@dataclass(frozen=True)
class EnableService(Step):
    # enabling does not start the unit on this boot unless asked to
    start_now: bool = False

    def commands(self, bucket_name: str) -> List[str]:
        enable = f"systemctl enable {self.layout.service_name}"
        if self.start_now:
            enable = f"systemctl enable --now {self.layout.service_name}"
        return ["systemctl daemon-reload", enable]

@dataclass
class BootstrapSequence:
    layout: BootstrapLayout
    steps: List[Step] = field(default_factory=list)

    def step_names(self) -> List[str]:
        return [step.name for step in self.steps]

    def commands(self, bucket_name: str) -> List[str]:
        validate_bucket_name(bucket_name)
        commands: List[str] = []
        for step in self.steps:
            commands.append(f"# {step.name}")
            commands.extend(step.commands(bucket_name))
        return commands

    def render(self, bucket_name: str) -> str:
        """Render the user data script for the given bucket."""
        return "\n".join(["#!/bin/bash", "set -e", *self.commands(bucket_name)]) + "\n"

def default_sequence(
    layout: BootstrapLayout,
    description: str = "Rust Elm WebSocket Server",
    restart_sec: int = 10,
    start_now: bool = False,
) -> BootstrapSequence:
    unit = ServiceUnit(layout, description=description, restart_sec=restart_sec)
    return BootstrapSequence(layout, [
        UpdatePackages(layout),
        InstallTooling(layout),
        PrepareFilesystem(layout),
        WriteRedeployScript(layout),
        WriteServiceUnit(layout, unit=unit),
        EnableService(layout, start_now=start_now),
    ])
