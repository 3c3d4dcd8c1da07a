"""
Command-line entry point.

Usage:
    node-provisioner setup --name my-node --mode standard --node-type full
    node-provisioner setup --config node.yaml --dry-run
    node-provisioner status
    node-provisioner resume
    node-provisioner convert --node-type validator
    node-provisioner clear --force

Exit codes: 0 on success, 1 on any failure.
"""

import argparse
import dataclasses
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv

from provisioner import __version__
from provisioner.errors import ProvisioningError
from provisioner.host import InMemoryHost, LocalHost
from provisioner.logging_config import configure_logging
from provisioner.modes import SELECTIONS, display_name, from_selection
from provisioner.node_config import NODE_DISPLAY_NAMES, NodeConfiguration, NodeType, parse_node_type
from provisioner.operations import CompositeOperation, Operation
from provisioner.plan import (
    build_convert_operations,
    build_setup_operations,
    check_disk_space,
    node_from_ledger,
    plan_configuration,
)
from provisioner.settings import AppSettings, get_settings
from provisioner.transaction import TransactionManager, TransactionResult

logger = logging.getLogger(__name__)

CONFIG_KEYS = ("name", "mode", "node_type", "os_user")


# =============================================================================
# Helpers
# =============================================================================


def load_config_file(path: str) -> Dict[str, Any]:
    """
    Read setup options from a YAML file.

    Keys match the setup flags; dashes and underscores are interchangeable.

    Raises:
        ValueError: File unreadable, not YAML, or not a mapping
    """
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
    except OSError as e:
        raise ValueError(f"Cannot read config file {path}: {e}")
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in {path}: {e}")

    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping")

    return {str(key).replace("-", "_"): value for key, value in data.items()}


def resolve_setup_options(args: argparse.Namespace) -> Dict[str, str]:
    """Merge --config values with flags; flags win."""
    config = load_config_file(args.config) if args.config else {}

    options = {}
    for key in CONFIG_KEYS:
        value = getattr(args, key, None)
        if value is None:
            value = config.get(key)
        options[key] = str(value) if value is not None else None

    for key in ("name", "mode"):
        if not options[key]:
            raise ValueError(f"Missing required option --{key.replace('_', '-')}")

    options["node_type"] = options["node_type"] or NodeType.FULL.value
    options["os_user"] = (
        options["os_user"] or os.environ.get("SUDO_USER") or os.environ.get("USER") or ""
    )
    return options


def _manager(args: argparse.Namespace) -> TransactionManager:
    state_file = Path(args.state_file) if args.state_file else None
    return TransactionManager(state_file=state_file)


def _print_plan(node: NodeConfiguration, operations: List[Operation]) -> None:
    print(
        f"Planned steps for node {node.name!r} "
        f"({display_name(node.mode)}, {NODE_DISPLAY_NAMES[node.node_type]}):"
    )
    for index, op in enumerate(operations, 1):
        print(f"  {index}. {op.description}")


def _report(manager: TransactionManager, result: TransactionResult) -> int:
    manager.display_progress()

    if result.success:
        manager.clear()
        print("Installation completed successfully")
        return 0

    print(f"Installation failed: {result.error}")
    for failure in result.rollback_failures:
        print(f"  Rollback problem: {failure}")
    if result.can_resume:
        print("Fix the problem above, then run 'node-provisioner resume' to continue.")
    return 1


# =============================================================================
# Commands
# =============================================================================


def cmd_setup(args: argparse.Namespace, settings: AppSettings) -> int:
    options = resolve_setup_options(args)

    mode = from_selection(
        options["mode"],
        options["os_user"],
        data_directory=settings.node.data_dir,
        service_user=settings.node.service_user,
    )
    node = NodeConfiguration.from_settings(
        options["name"], mode, parse_node_type(options["node_type"]), settings.node
    )

    problems = node.validate()
    if problems:
        for problem in problems:
            print(f"Invalid configuration: {problem}")
        return 1

    host = InMemoryHost() if args.dry_run else LocalHost()
    operations = build_setup_operations(node, host, settings.node)

    if args.dry_run:
        _print_plan(node, operations)
        return 0

    manager = _manager(args)
    if manager.load_existing() and manager.ledger.can_resume() and not args.force:
        manager.display_progress()
        print(
            "An installation is already in progress. Run 'resume' to continue it, "
            "or 'setup --force' to start over."
        )
        return 1

    problem = check_disk_space(node, host)
    if problem:
        print(problem)
        return 1

    manager.initialize(
        operations,
        mode=mode.type.value,
        node_type=node.node_type.value,
        configuration=plan_configuration(node, options["os_user"]),
    )
    logger.info(f"{manager.log_prefix}Setting up node {node.name!r}")

    return _report(manager, manager.execute())


def cmd_resume(args: argparse.Namespace, settings: AppSettings) -> int:
    manager = _manager(args)
    if not manager.load_existing():
        print("No installation to resume")
        return 1

    state = manager.ledger.get_state()
    node = node_from_ledger(state.mode, state.node_type, state.configuration, settings.node)

    # Completed steps are never re-run, even when the failed attempt undid them
    undone = [s for s in manager.ledger.get_completed_steps() if s.metadata.get("rolled_back")]
    if undone:
        logger.warning(f"{manager.log_prefix}{len(undone)} completed step(s) were rolled back")
        print(
            f"Warning: {len(undone)} completed step(s) were rolled back by the failed attempt "
            "and will not be re-run. Use 'setup --force' to start over instead."
        )

    if args.dry_run:
        manager.display_progress()
        print("Steps that would run:")
        for step in manager.ledger.get_pending_steps():
            print(f"  - {step.description}")
        return 0

    operations = build_setup_operations(node, LocalHost(), settings.node)
    return _report(manager, manager.resume(operations))


def cmd_convert(args: argparse.Namespace, settings: AppSettings) -> int:
    manager = _manager(args)
    if manager.load_existing() and manager.ledger.can_resume():
        print("An installation is in progress. Finish it with 'resume' before converting.")
        return 1

    host = LocalHost()
    unit_path = settings.node.service_file_path
    if not host.is_file(unit_path):
        print(f"No installed node found ({unit_path} is missing). Run 'setup' first.")
        return 1

    current = NodeConfiguration.from_service_file(
        host.read_text(unit_path), service_name=settings.node.service_name
    )
    target = parse_node_type(args.node_type)
    print(f"Current configuration: {NODE_DISPLAY_NAMES[current.node_type]}")

    if current.node_type is target:
        print(f"Node is already configured as {NODE_DISPLAY_NAMES[target]}")
        return 0

    node = dataclasses.replace(current, node_type=target)
    problem = check_disk_space(node, host)
    if problem:
        print(problem)
        return 1

    operations = build_convert_operations(node, host, settings.node)
    if args.dry_run:
        print(f"Steps to convert node {node.name!r} to {NODE_DISPLAY_NAMES[target]}:")
        for index, op in enumerate(operations, 1):
            print(f"  {index}. {op.description}")
        return 0

    conversion = CompositeOperation(f"Convert {node.name} to {target.value}", operations)
    result = conversion.execute()

    if not result.success:
        print(f"Conversion failed: {result.error}")
        for failure in result.context.get("rollback_failures", []):
            print(f"  Rollback problem: {failure}")
        return 1

    print(f"Node converted to {NODE_DISPLAY_NAMES[target]}")
    print(f"Check status: journalctl -u {node.service_name} -f")
    return 0


def cmd_status(args: argparse.Namespace, settings: AppSettings) -> int:
    manager = _manager(args)
    manager.load_existing()
    manager.display_progress()

    if manager.ledger.can_resume():
        print("This installation can be resumed with 'node-provisioner resume'.")
    return 0


def cmd_clear(args: argparse.Namespace, settings: AppSettings) -> int:
    manager = _manager(args)
    if not manager.load_existing():
        print("No installation state to clear")
        return 0

    if manager.ledger.can_resume() and not args.force:
        print("Refusing to discard a resumable installation without --force")
        return 1

    manager.clear()
    print("Installation state cleared")
    return 0


# =============================================================================
# Entry point
# =============================================================================


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="node-provisioner",
        description="Transactional node setup with rollback and resume",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--state-file",
        help="Path to the installation ledger (default from settings)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Override PROVISIONER_LOG_LEVEL",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Setup command
    setup_parser = subparsers.add_parser("setup", help="Install and start a node")
    setup_parser.add_argument("--name", help="Node name shown on the network")
    setup_parser.add_argument(
        "--mode",
        choices=sorted(SELECTIONS),
        help="Installation mode (easy = standard, hard = advanced)",
    )
    setup_parser.add_argument(
        "--node-type",
        choices=[t.value for t in NodeType],
        help="Node type (default: full)",
    )
    setup_parser.add_argument(
        "--os-user",
        help="Login user that runs a legacy installation (default: invoking user)",
    )
    setup_parser.add_argument("--config", help="YAML file with setup options")
    setup_parser.add_argument(
        "--dry-run", action="store_true", help="Print the planned steps and exit"
    )
    setup_parser.add_argument(
        "--force", action="store_true", help="Start over even if a resumable install exists"
    )
    setup_parser.set_defaults(handler=cmd_setup)

    # Resume command
    resume_parser = subparsers.add_parser("resume", help="Continue a failed installation")
    resume_parser.add_argument(
        "--dry-run", action="store_true", help="Show the steps that would run and exit"
    )
    resume_parser.set_defaults(handler=cmd_resume)

    # Convert command
    convert_parser = subparsers.add_parser(
        "convert", help="Switch an installed node to another node type"
    )
    convert_parser.add_argument(
        "--node-type",
        required=True,
        choices=[t.value for t in NodeType],
        help="Node type to convert to",
    )
    convert_parser.add_argument(
        "--dry-run", action="store_true", help="Print the conversion steps and exit"
    )
    convert_parser.set_defaults(handler=cmd_convert)

    # Status command
    status_parser = subparsers.add_parser("status", help="Show installation progress")
    status_parser.set_defaults(handler=cmd_status)

    # Clear command
    clear_parser = subparsers.add_parser("clear", help="Discard installation state")
    clear_parser.add_argument(
        "--force", action="store_true", help="Discard even a resumable installation"
    )
    clear_parser.set_defaults(handler=cmd_clear)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the CLI.

    Args:
        argv: Command-line arguments (defaults to sys.argv).

    Returns:
        Exit code (0 for success, 1 for error).
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    # Nested settings groups read os.environ only, so .env must be loaded first
    load_dotenv()
    settings = get_settings()
    configure_logging(
        level=args.log_level or settings.log_level,
        fmt=settings.log_format,
        log_file=settings.log_file or None,
    )

    try:
        return args.handler(args, settings)
    except ProvisioningError as e:
        logger.error(f"{type(e).__name__}: {e}")
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
