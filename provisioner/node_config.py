"""
Node configuration: what the node is, independent of how it gets installed.

Renders the node's command line and its systemd unit from the installation
mode and node type.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional

from provisioner.modes import InstallationMode, LegacyMode, ModeType, StandardMode


class NodeType(Enum):
    FULL = "full"
    VALIDATOR = "validator"
    ARCHIVER = "archiver"


@dataclass(frozen=True)
class NodeRequirements:
    minimum_disk_gb: int
    minimum_ram_gb: int
    description: str


NODE_TYPE_FLAGS: Dict[NodeType, List[str]] = {
    NodeType.FULL: ["--pruning", "1000"],
    NodeType.VALIDATOR: ["--validator"],
    NodeType.ARCHIVER: ["--pruning", "archive"],
}

NODE_REQUIREMENTS: Dict[NodeType, NodeRequirements] = {
    NodeType.FULL: NodeRequirements(60, 4, "Full node with pruning - stores recent chain state"),
    NodeType.VALIDATOR: NodeRequirements(60, 4, "Validator node - participates in consensus"),
    NodeType.ARCHIVER: NodeRequirements(120, 8, "Archive node - stores complete chain history"),
}

NODE_DISPLAY_NAMES: Dict[NodeType, str] = {
    NodeType.FULL: "Full Node",
    NodeType.VALIDATOR: "Validator Node",
    NodeType.ARCHIVER: "Archiver Node",
}

# Characters that would break the quoted --name argument in the unit file
_FORBIDDEN_NAME_CHARS = set('"\\\n\r')

_UNIT_NAME = re.compile(r'--name\s+"([^"]+)"')
_UNIT_USER = re.compile(r"^User=(\S+)", re.MULTILINE)
_UNIT_GROUP = re.compile(r"^Group=(\S+)", re.MULTILINE)
_UNIT_BINARY = re.compile(r"^ExecStart=(\S+)", re.MULTILINE)
_UNIT_BASE_PATH = re.compile(r"--base-path\s+([^\s\\]+)")
_UNIT_CHAIN = re.compile(r"--chain\s+([^\s\\]+)")
_UNIT_PORT = re.compile(r"--port\s+(\d+)")


def parse_node_type(value: str) -> NodeType:
    try:
        return NodeType(value.strip().lower())
    except ValueError:
        raise ValueError(
            f"Unknown node type {value!r} (expected one of: "
            f"{', '.join(t.value for t in NodeType)})"
        )


def detect_node_type(unit_content: str) -> NodeType:
    """Node type an installed unit runs as, from its type flags."""
    if "--validator" in unit_content:
        return NodeType.VALIDATOR
    if re.search(r"--pruning\s+archive", unit_content):
        return NodeType.ARCHIVER
    return NodeType.FULL


@dataclass(frozen=True)
class NodeConfiguration:
    """
    Everything needed to render and install one node.

    Attributes:
        name: Node name shown on the network
        mode: Installation mode (decides data directory and service user)
        node_type: full, validator or archiver
        port: P2P port
        chain_spec: Path of the chain specification file
        binary_path: Where the node binary is installed
        service_name: systemd unit name without the .service suffix
        service_group: Group for non-legacy modes
    """

    name: str
    mode: InstallationMode
    node_type: NodeType
    port: int = 40100
    chain_spec: str = "/usr/local/bin/new-main-spec.json"
    binary_path: str = "/usr/local/bin/d9-node"
    service_name: str = "d9-node"
    service_group: str = "d9-node"

    @classmethod
    def from_settings(
        cls,
        name: str,
        mode: InstallationMode,
        node_type: NodeType,
        settings=None,
    ) -> "NodeConfiguration":
        """Build a configuration with port, paths and names from NodeSettings."""
        if settings is None:
            from provisioner.settings import get_settings

            settings = get_settings().node

        return cls(
            name=name,
            mode=mode,
            node_type=node_type,
            port=settings.port,
            chain_spec=settings.chain_spec_path,
            binary_path=settings.binary_path,
            service_name=settings.service_name,
            service_group=settings.service_group,
        )

    @classmethod
    def from_service_file(
        cls,
        content: str,
        node_type: Optional[NodeType] = None,
        service_name: str = "d9-node",
    ) -> "NodeConfiguration":
        """
        Recover the configuration an installed unit file was rendered from.

        A unit without a Group line is a legacy install. Standard and
        advanced installs render identical units, so both come back as
        standard; only key generation differs between them.

        Args:
            content: Unit file text
            node_type: Override the node type found in the unit
            service_name: Name of the unit the content was read from

        Raises:
            ValueError: The unit lacks ExecStart, User or --name
        """
        binary = _UNIT_BINARY.search(content)
        user = _UNIT_USER.search(content)
        name = _UNIT_NAME.search(content)
        if not (binary and user and name):
            raise ValueError(f"Unit file for {service_name} was not written by node-provisioner")

        group = _UNIT_GROUP.search(content)
        base_path = _UNIT_BASE_PATH.search(content)
        if group:
            mode: InstallationMode = StandardMode(
                data_directory=base_path.group(1) if base_path else StandardMode().data_directory,
                service_user=user.group(1),
            )
        else:
            mode = LegacyMode(service_user=user.group(1))

        kwargs = {}
        chain = _UNIT_CHAIN.search(content)
        if chain:
            kwargs["chain_spec"] = chain.group(1)
        port = _UNIT_PORT.search(content)
        if port:
            kwargs["port"] = int(port.group(1))
        if group:
            kwargs["service_group"] = group.group(1)

        return cls(
            name=name.group(1),
            mode=mode,
            node_type=node_type or detect_node_type(content),
            binary_path=binary.group(1),
            service_name=service_name,
            **kwargs,
        )

    @property
    def data_directory(self) -> str:
        return self.mode.data_directory

    @property
    def service_user(self) -> str:
        return self.mode.service_user

    @property
    def is_legacy(self) -> bool:
        return self.mode.type is ModeType.LEGACY

    @property
    def requirements(self) -> NodeRequirements:
        return NODE_REQUIREMENTS[self.node_type]

    def validate(self) -> List[str]:
        """Return a list of problems; empty when the configuration is usable."""
        errors = []

        if not self.name or not self.name.strip():
            errors.append("Node name is required")
        elif _FORBIDDEN_NAME_CHARS & set(self.name):
            errors.append("Node name must not contain quotes, backslashes or newlines")

        if not 1024 <= self.port <= 65535:
            errors.append(f"Port must be between 1024 and 65535, got {self.port}")

        if not self.binary_path:
            errors.append("Binary path is required")
        if not self.chain_spec:
            errors.append("Chain spec path is required")

        return errors

    def is_valid(self) -> bool:
        return not self.validate()

    def command_args(self) -> List[str]:
        args = [
            "--base-path", self.data_directory,
            "--chain", self.chain_spec,
            "--name", f'"{self.name}"',
            "--port", str(self.port),
        ]
        args.extend(NODE_TYPE_FLAGS[self.node_type])
        return args

    def service_file_content(self, description: Optional[str] = None) -> str:
        """Render the systemd unit; legacy installs keep the old unit layout."""
        # One flag per continuation line, value kept next to its flag
        args = self.command_args()
        lines: List[str] = []
        for arg in args:
            if lines and not arg.startswith("--"):
                lines[-1] = f"{lines[-1]} {arg}"
            else:
                lines.append(arg)
        exec_start = f"ExecStart={self.binary_path} \\\n  " + " \\\n  ".join(lines)

        service_lines = ["Type=simple", f"User={self.service_user}"]
        if not self.is_legacy:
            service_lines.append(f"Group={self.service_group}")
            service_lines.append(f"WorkingDirectory={self.data_directory}")
        service_lines.append(exec_start)

        return (
            "[Unit]\n"
            f"Description={description or 'D9 Node'}\n"
            "After=network.target\n"
            "\n"
            "[Service]\n"
            + "\n".join(service_lines)
            + "\n\n"
            "Restart=on-failure\n"
            "\n"
            "[Install]\n"
            "WantedBy=multi-user.target\n"
        )
