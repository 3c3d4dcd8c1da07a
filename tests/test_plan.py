"""
Tests for the node setup plan.
"""

import hashlib

import pytest


@pytest.fixture
def node_settings():
    from provisioner.settings import NodeSettings

    return NodeSettings(binary_url="https://example.com/d9-node.tar.gz")


def _node(selection="standard", node_type="full"):
    from provisioner.modes import from_selection
    from provisioner.node_config import NodeConfiguration, parse_node_type

    return NodeConfiguration(
        name="alice",
        mode=from_selection(selection, os_user="ubuntu"),
        node_type=parse_node_type(node_type),
    )


class TestBuildSetupOperations:
    def test_standard_order(self, host, node_settings):
        from provisioner.plan import build_setup_operations

        ops = build_setup_operations(_node(), host, node_settings)

        assert [op.op_type for op in ops] == [
            "create_user",
            "install_packages",
            "download_file",
            "install_binary",
            "download_file",
            "create_directory",
            "create_service_file",
            "enable_service",
            "start_service",
        ]
        assert ops[3].archive == "/tmp/d9-node.tar.gz"
        assert ops[3].destination == "/usr/local/bin/d9-node"
        assert ops[4].destination == "/usr/local/bin/new-main-spec.json"
        assert ops[5].owner == "d9-node:d9-node"
        assert ops[5].permissions == "750"
        assert ops[6].path == "/etc/systemd/system/d9-node.service"

    def test_legacy_skips_user_creation(self, host, node_settings):
        from provisioner.plan import build_setup_operations

        ops = build_setup_operations(_node("legacy"), host, node_settings)

        assert "create_user" not in [op.op_type for op in ops]
        directory = next(op for op in ops if op.op_type == "create_directory")
        assert directory.path == "/home/ubuntu/node-data"
        assert directory.owner == "ubuntu:ubuntu"
        assert directory.permissions == "755"

    def test_without_start(self, host, node_settings):
        from provisioner.plan import build_setup_operations

        ops = build_setup_operations(_node(), host, node_settings, start_service=False)

        assert ops[-1].op_type == "enable_service"

    def test_plan_runs_end_to_end(self, state_file, node_settings, release_remote):
        from provisioner.host import InMemoryHost
        from provisioner.plan import build_setup_operations
        from provisioner.transaction import TransactionManager

        host = InMemoryHost(remote=release_remote(node_settings))
        manager = TransactionManager(state_file=state_file)
        manager.initialize(build_setup_operations(_node(), host, node_settings), "standard", "full")

        result = manager.execute()

        assert result.success is True
        assert host.user_exists("d9-node")
        assert host.is_dir("/var/lib/d9-node")
        assert host.service_enabled("d9-node")
        assert host.service_active("d9-node")
        assert host.is_file("/usr/local/bin/d9-node")
        assert host.modes["/usr/local/bin/d9-node"] == "0755"
        assert host.is_file("/usr/local/bin/new-main-spec.json")
        unit = host.read_text("/etc/systemd/system/d9-node.service")
        assert "ExecStart=/usr/local/bin/d9-node" in unit
        assert "--chain /usr/local/bin/new-main-spec.json" in unit
        assert "--pruning 1000" in host.read_text("/etc/systemd/system/d9-node.service").replace(" \\\n  ", " ")

    def test_plan_rolls_back_on_start_failure(self, state_file, node_settings, release_remote):
        from provisioner.host import InMemoryHost
        from provisioner.plan import build_setup_operations
        from provisioner.transaction import TransactionManager

        host = InMemoryHost(remote=release_remote(node_settings))
        host.fail("start_service", "failed to start")
        manager = TransactionManager(state_file=state_file)
        manager.initialize(build_setup_operations(_node(), host, node_settings), "standard", "full")

        result = manager.execute()

        assert result.success is False
        assert result.can_resume is True
        assert not host.user_exists("d9-node")
        assert not host.exists("/var/lib/d9-node")
        assert not host.exists("/etc/systemd/system/d9-node.service")
        assert not host.exists("/tmp/d9-node.tar.gz")
        assert not host.exists("/usr/local/bin/d9-node")
        assert not host.exists("/usr/local/bin/new-main-spec.json")
        assert not host.service_enabled("d9-node")
        assert host.package_installed("curl")

    def test_checksum_is_passed_through(self, host):
        from provisioner.plan import build_setup_operations
        from provisioner.settings import NodeSettings

        digest = hashlib.sha256(b"x").hexdigest()
        settings = NodeSettings(binary_sha256=digest)

        ops = build_setup_operations(_node(), host, settings)

        download = next(op for op in ops if op.op_type == "download_file")
        assert download.expected_sha256 == digest


class TestLedgerConfiguration:
    def test_plan_configuration(self):
        from provisioner.plan import plan_configuration

        config = plan_configuration(_node("hard"))

        assert config["node_name"] == "alice"
        assert config["service_user"] == "d9-node"
        assert config["base_path"] == "/var/lib/d9-node"
        assert config["keystore_path"] == "/var/lib/d9-node/chains/d9_main/keystore"

    def test_round_trip_through_ledger_values(self, host, node_settings):
        from provisioner.plan import build_setup_operations, node_from_ledger, plan_configuration

        original = _node("legacy", "validator")
        config = plan_configuration(original)

        rebuilt = node_from_ledger("legacy", "validator", config, node_settings)

        assert rebuilt.mode == original.mode
        assert rebuilt.node_type == original.node_type
        assert [op.description for op in build_setup_operations(rebuilt, host, node_settings)] == [
            op.description for op in build_setup_operations(original, host, node_settings)
        ]

    def test_missing_name(self, node_settings):
        from provisioner.plan import node_from_ledger

        with pytest.raises(ValueError, match="node_name"):
            node_from_ledger("standard", "full", {}, node_settings)


class TestDiskSpace:
    def test_enough_space(self):
        from provisioner.host import InMemoryHost
        from provisioner.plan import check_disk_space

        assert check_disk_space(_node(), InMemoryHost(free_gb=61)) is None

    def test_archiver_needs_more(self):
        from provisioner.host import InMemoryHost
        from provisioner.plan import check_disk_space

        problem = check_disk_space(_node(node_type="archiver"), InMemoryHost(free_gb=80))

        assert "120GB required" in problem
        assert "80.0GB free under /var/lib/d9-node" in problem

    def test_uses_node_type_minimum(self):
        from provisioner.host import InMemoryHost
        from provisioner.plan import check_disk_space

        host = InMemoryHost(free_gb=59.5)

        assert check_disk_space(_node(node_type="validator"), host) is not None


class TestBuildConvertOperations:
    def test_order(self, host, node_settings):
        from provisioner.plan import build_convert_operations

        ops = build_convert_operations(_node(node_type="validator"), host, node_settings)

        assert [op.op_type for op in ops] == ["stop_service", "create_service_file", "start_service"]
        assert "--validator" in ops[1].content

    def test_failed_start_restores_unit_and_restarts(self, node_settings):
        from provisioner.host import InMemoryHost
        from provisioner.operations import CompositeOperation
        from provisioner.plan import build_convert_operations

        old_unit = _node().service_file_content()
        host = InMemoryHost(files={node_settings.service_file_path: old_unit})
        host.active_services.add("d9-node")

        conversion = CompositeOperation(
            "Convert alice to validator",
            build_convert_operations(_node(node_type="validator"), host, node_settings),
        )
        host.fail("start_service", "unit failed")
        result = conversion.execute()

        assert result.success is False
        assert host.read_text(node_settings.service_file_path) == old_unit

        # The restart during rollback goes through the same failing action
        assert len(result.context["rollback_failures"]) == 1
        assert not host.service_active("d9-node")

        host.recover("start_service")
        host.active_services.add("d9-node")
        assert conversion.execute().success is True
        assert "--validator" in host.read_text(node_settings.service_file_path)
