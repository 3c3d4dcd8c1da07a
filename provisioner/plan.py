"""
Operation plan for a node setup.

Turns a NodeConfiguration into the ordered operation list the transaction
manager runs, and records enough in the ledger's configuration map to
rebuild exactly the same list when a failed setup is resumed.

Usage:
    from provisioner.plan import build_setup_operations, plan_configuration

    operations = build_setup_operations(node, LocalHost())
    manager.initialize(
        operations,
        mode=node.mode.type.value,
        node_type=node.node_type.value,
        configuration=plan_configuration(node),
    )
"""

import logging
from typing import Any, Dict, List, Optional

from provisioner.host import Host
from provisioner.modes import ModeType, create_mode, keystore_path, mode_capabilities
from provisioner.node_config import NodeConfiguration, parse_node_type
from provisioner.operations import Operation
from provisioner.settings import NodeSettings, get_settings
from provisioner.system_operations import (
    CreateDirectoryOperation,
    CreateServiceFileOperation,
    CreateUserOperation,
    DownloadFileOperation,
    EnableServiceOperation,
    InstallBinaryOperation,
    InstallPackagesOperation,
    StartServiceOperation,
    StopServiceOperation,
)

logger = logging.getLogger(__name__)


def build_setup_operations(
    node: NodeConfiguration,
    host: Host,
    settings: Optional[NodeSettings] = None,
    start_service: bool = True,
) -> List[Operation]:
    """
    Build the ordered operations for installing one node.

    Order: service user (not for legacy), packages, release download, binary
    install, chain spec download, data directory, unit file, enable, start.
    """
    settings = settings or get_settings().node
    caps = mode_capabilities(node.mode)

    operations: List[Operation] = []

    if caps.requires_user_creation:
        operations.append(
            CreateUserOperation(host, node.service_user, system=True, create_home=False)
        )

    operations.append(InstallPackagesOperation(host, settings.packages))

    operations.append(
        DownloadFileOperation(
            host,
            settings.binary_url,
            settings.download_path,
            expected_sha256=settings.binary_sha256,
        )
    )
    operations.append(
        InstallBinaryOperation(
            host,
            settings.download_path,
            settings.binary_archive_member,
            node.binary_path,
        )
    )
    operations.append(
        DownloadFileOperation(
            host,
            settings.chain_spec_url,
            node.chain_spec,
            expected_sha256=settings.chain_spec_sha256,
        )
    )

    group = node.service_user if node.is_legacy else node.service_group
    operations.append(
        CreateDirectoryOperation(
            host,
            node.data_directory,
            owner=f"{node.service_user}:{group}",
            permissions=caps.data_directory_permissions,
        )
    )

    operations.append(
        CreateServiceFileOperation(
            host,
            node.service_name,
            node.service_file_content(),
            settings.service_file_path,
        )
    )

    operations.append(EnableServiceOperation(host, node.service_name))
    if start_service:
        operations.append(StartServiceOperation(host, node.service_name))

    logger.debug(f"Planned {len(operations)} operations for node {node.name!r}")
    return operations


def plan_configuration(node: NodeConfiguration, os_user: str = "") -> Dict[str, Any]:
    """Values recorded in the ledger so resume can rebuild the plan."""
    return {
        "node_name": node.name,
        "os_user": os_user or (node.service_user if node.is_legacy else ""),
        "service_user": node.service_user,
        "base_path": node.data_directory,
        "keystore_path": keystore_path(node.mode),
        "port": node.port,
    }


def node_from_ledger(
    mode: str,
    node_type: str,
    configuration: Dict[str, Any],
    settings: Optional[NodeSettings] = None,
) -> NodeConfiguration:
    """
    Rebuild the NodeConfiguration a persisted transaction was planned from.

    Raises:
        ValueError: The ledger lacks the values recorded by plan_configuration
    """
    settings = settings or get_settings().node

    name = configuration.get("node_name")
    if not name:
        raise ValueError("Ledger configuration has no node_name")

    node_mode = create_mode(
        ModeType(mode),
        configuration.get("os_user", ""),
        data_directory=settings.data_dir,
        service_user=settings.service_user,
    )
    node = NodeConfiguration.from_settings(name, node_mode, parse_node_type(node_type), settings)

    base_path = configuration.get("base_path")
    if base_path and base_path != node.data_directory:
        logger.warning(
            f"Data directory changed since setup started: {base_path} -> {node.data_directory}"
        )

    return node


def check_disk_space(node: NodeConfiguration, host: Host) -> Optional[str]:
    """
    Compare free space under the data directory with the node type's minimum.

    Returns:
        A problem description, or None when there is enough space
    """
    required = node.requirements.minimum_disk_gb
    available = host.free_space_gb(node.data_directory)

    logger.info(
        f"Disk space for {node.data_directory}: {available:.1f}GB free, {required}GB required"
    )
    if available < required:
        return (
            f"Not enough disk space for a {node.node_type.value} node: "
            f"{required}GB required, {available:.1f}GB free under {node.data_directory}"
        )
    return None


def build_convert_operations(
    node: NodeConfiguration,
    host: Host,
    settings: Optional[NodeSettings] = None,
) -> List[Operation]:
    """
    Operations that switch an installed node to node.node_type.

    The service is stopped, the unit rewritten and the service started
    again; on failure the old unit is restored and the service restarted.
    """
    settings = settings or get_settings().node

    return [
        StopServiceOperation(host, node.service_name),
        CreateServiceFileOperation(
            host,
            node.service_name,
            node.service_file_content(),
            settings.service_file_path,
        ),
        StartServiceOperation(host, node.service_name),
    ]
