"""
Tests for the host abstraction.

LocalHost is exercised with subprocess.run and the requests session
mocked; InMemoryHost is tested directly.
"""

import hashlib
import os
import subprocess
from unittest.mock import MagicMock, patch

import pytest
import requests


def _completed(args=None, returncode=0, stdout="", stderr=""):
    return subprocess.CompletedProcess(args or [], returncode, stdout=stdout, stderr=stderr)


@pytest.fixture
def local_host():
    from provisioner.host import LocalHost

    with patch("provisioner.host.os.geteuid", return_value=1000):
        yield LocalHost(session=MagicMock())


class TestCommandResult:
    def test_check_raises_on_failure(self):
        from provisioner.errors import HostCommandError
        from provisioner.host import CommandResult

        result = CommandResult(["useradd", "x"], 9, stderr="user exists\n")

        with pytest.raises(HostCommandError) as exc_info:
            result.check()

        assert exc_info.value.returncode == 9
        assert exc_info.value.command == ["useradd", "x"]
        assert str(exc_info.value) == "useradd x: user exists"

    def test_check_returns_self(self):
        from provisioner.host import CommandResult

        result = CommandResult(["true"], 0)

        assert result.ok is True
        assert result.check() is result


class TestLocalHostRun:
    def test_privileged_uses_sudo_when_not_root(self, local_host):
        with patch("provisioner.host.subprocess.run", return_value=_completed()) as mock_run:
            local_host.run(["systemctl", "start", "d9-node"], privileged=True)

        assert mock_run.call_args[0][0] == ["sudo", "-n", "systemctl", "start", "d9-node"]
        assert mock_run.call_args[1]["timeout"] == 300
        assert mock_run.call_args[1]["capture_output"] is True

    def test_unprivileged_never_uses_sudo(self, local_host):
        with patch("provisioner.host.subprocess.run", return_value=_completed()) as mock_run:
            local_host.run(["id", "-u", "d9-node"])

        assert mock_run.call_args[0][0] == ["id", "-u", "d9-node"]

    def test_root_skips_sudo(self):
        from provisioner.host import LocalHost

        host = LocalHost(session=MagicMock())
        with patch("provisioner.host.os.geteuid", return_value=0), \
             patch("provisioner.host.subprocess.run", return_value=_completed()) as mock_run:
            host.run(["mkdir", "-p", "/x"], privileged=True)

        assert mock_run.call_args[0][0] == ["mkdir", "-p", "/x"]

    def test_sudo_disabled_in_settings(self, monkeypatch):
        from provisioner.host import LocalHost
        from provisioner.settings import get_settings

        monkeypatch.setenv("PROVISIONER_HOST_USE_SUDO", "false")
        get_settings.cache_clear()

        host = LocalHost(session=MagicMock())
        with patch("provisioner.host.os.geteuid", return_value=1000), \
             patch("provisioner.host.subprocess.run", return_value=_completed()) as mock_run:
            host.run(["mkdir", "-p", "/x"], privileged=True)

        assert host.use_sudo is False
        assert mock_run.call_args[0][0] == ["mkdir", "-p", "/x"]

    def test_timeout(self, local_host):
        with patch(
            "provisioner.host.subprocess.run",
            side_effect=subprocess.TimeoutExpired(cmd="apt-get", timeout=300),
        ):
            result = local_host.run(["apt-get", "update"])

        assert result.ok is False
        assert result.returncode == -1
        assert "timed out" in result.stderr

    def test_missing_binary(self, local_host):
        with patch("provisioner.host.subprocess.run", side_effect=FileNotFoundError()):
            result = local_host.run(["nosuchtool"])

        assert result.returncode == 127
        assert "command not found" in result.stderr


class TestLocalHostOperations:
    def test_make_dirs_failure_raises(self, local_host):
        from provisioner.errors import HostCommandError

        with patch(
            "provisioner.host.subprocess.run",
            return_value=_completed(returncode=1, stderr="Permission denied"),
        ):
            with pytest.raises(HostCommandError, match="Permission denied"):
                local_host.make_dirs("/opt/x")

    def test_package_installed(self, local_host):
        with patch(
            "provisioner.host.subprocess.run",
            return_value=_completed(stdout="install ok installed"),
        ) as mock_run:
            assert local_host.package_installed("curl") is True

        assert mock_run.call_args[0][0] == ["dpkg-query", "-W", "-f=${Status}", "curl"]

    def test_package_not_installed(self, local_host):
        with patch(
            "provisioner.host.subprocess.run",
            return_value=_completed(returncode=1, stderr="no packages found"),
        ):
            assert local_host.package_installed("curl") is False

    def test_install_packages(self, local_host):
        with patch("provisioner.host.subprocess.run", return_value=_completed()) as mock_run:
            local_host.install_packages(["curl", "jq"])

        assert mock_run.call_args[0][0] == [
            "sudo", "-n", "apt-get", "install", "-y", "-qq", "curl", "jq"
        ]

    def test_install_nothing_runs_nothing(self, local_host):
        with patch("provisioner.host.subprocess.run") as mock_run:
            local_host.install_packages([])

        mock_run.assert_not_called()

    def test_create_user(self, local_host):
        with patch("provisioner.host.subprocess.run", return_value=_completed()) as mock_run:
            local_host.create_user("d9-node", system=True, shell="/bin/false")

        assert mock_run.call_args[0][0] == [
            "sudo", "-n", "useradd", "--system", "--no-create-home",
            "--shell", "/bin/false", "d9-node",
        ]

    def test_service_probes(self, local_host):
        with patch(
            "provisioner.host.subprocess.run",
            side_effect=[_completed(stdout="enabled\n"), _completed(returncode=3, stdout="inactive\n")],
        ):
            assert local_host.service_enabled("d9-node") is True
            assert local_host.service_active("d9-node") is False

    def test_write_file_stages_and_installs(self, local_host):
        staged = {}

        def fake_run(cmd, **kwargs):
            source = cmd[-2]
            with open(source) as f:
                staged["content"] = f.read()
            staged["path"] = source
            staged["cmd"] = cmd
            return _completed()

        with patch("provisioner.host.subprocess.run", side_effect=fake_run):
            local_host.write_file("/etc/systemd/system/d9-node.service", "[Service]\n")

        assert staged["content"] == "[Service]\n"
        assert staged["cmd"][:5] == ["sudo", "-n", "install", "-m", "0644"]
        assert staged["cmd"][-1] == "/etc/systemd/system/d9-node.service"
        assert not os.path.exists(staged["path"])

    def test_sha256(self, local_host, tmp_path):
        path = tmp_path / "blob"
        path.write_bytes(b"hello")

        assert local_host.sha256(str(path)) == hashlib.sha256(b"hello").hexdigest()

    def test_sha256_missing_file(self, local_host, tmp_path):
        from provisioner.errors import HostCommandError

        with pytest.raises(HostCommandError):
            local_host.sha256(str(tmp_path / "missing"))


class TestLocalHostDownload:
    def _response(self, chunks):
        response = MagicMock()
        response.iter_content.return_value = chunks
        return response

    def test_download_streams_to_destination(self, local_host):
        response = self._response([b"abc", b"", b"def"])
        local_host.session.get.return_value.__enter__.return_value = response
        staged = {}

        def fake_run(cmd, **kwargs):
            with open(cmd[-2], "rb") as f:
                staged["content"] = f.read()
            staged["cmd"] = cmd
            return _completed()

        with patch("provisioner.host.subprocess.run", side_effect=fake_run):
            local_host.download("https://example.com/d9-node.tar.gz", "/tmp/d9-node.tar.gz")

        local_host.session.get.assert_called_once_with(
            "https://example.com/d9-node.tar.gz", stream=True, timeout=120
        )
        assert staged["content"] == b"abcdef"
        assert staged["cmd"][-1] == "/tmp/d9-node.tar.gz"

    def test_download_http_error(self, local_host):
        from provisioner.errors import HostCommandError

        response = self._response([])
        response.raise_for_status.side_effect = requests.HTTPError("404 Client Error")
        local_host.session.get.return_value.__enter__.return_value = response

        with patch("provisioner.host.subprocess.run") as mock_run:
            with pytest.raises(HostCommandError, match="404"):
                local_host.download("https://example.com/missing", "/tmp/x")

        mock_run.assert_not_called()


class TestInMemoryHost:
    def test_make_dirs_creates_parents(self, host):
        host.make_dirs("/var/lib/d9-node")

        assert host.is_dir("/var")
        assert host.is_dir("/var/lib")
        assert host.is_dir("/var/lib/d9-node")
        assert host.calls == [["make_dirs", "/var/lib/d9-node"]]

    def test_remove_is_recursive(self, host):
        host.make_dirs("/x/y")
        host.write_file("/x/y/z.txt", "data")

        host.remove("/x")

        assert not host.exists("/x")
        assert not host.exists("/x/y/z.txt")
        assert host.is_dir("/")

    def test_write_and_read(self, host):
        host.write_file("/etc/unit", "hello", "0600")

        assert host.read_text("/etc/unit") == "hello"
        assert host.modes["/etc/unit"] == "0600"
        assert host.is_dir("/etc")

    def test_read_missing(self, host):
        from provisioner.errors import HostCommandError

        with pytest.raises(HostCommandError):
            host.read_text("/nope")

    def test_failure_injection(self, host):
        from provisioner.errors import HostCommandError

        host.fail("make_dirs", "no space left")
        with pytest.raises(HostCommandError, match="no space left"):
            host.make_dirs("/x")
        assert not host.exists("/x")

        host.recover("make_dirs")
        host.make_dirs("/x")
        assert host.is_dir("/x")

    def test_run_failure_injection_returns_result(self, host):
        host.fail("run", "nope")

        result = host.run(["true"])

        assert result.ok is False
        assert result.stderr == "nope"

    def test_download(self):
        from provisioner.errors import HostCommandError
        from provisioner.host import InMemoryHost

        host = InMemoryHost(remote={"https://x/a.tgz": b"payload"})

        host.download("https://x/a.tgz", "/tmp/a.tgz")

        assert host.sha256("/tmp/a.tgz") == hashlib.sha256(b"payload").hexdigest()
        with pytest.raises(HostCommandError, match="404"):
            host.download("https://x/missing", "/tmp/b")

    def test_users(self, host):
        from provisioner.errors import HostCommandError

        host.create_user("d9-node")
        assert host.user_exists("d9-node")
        with pytest.raises(HostCommandError):
            host.create_user("d9-node")

        host.delete_user("d9-node")
        assert not host.user_exists("d9-node")

    def test_services_and_packages(self, host):
        host.install_packages(["curl"])
        host.enable_service("d9-node")
        host.start_service("d9-node")
        host.daemon_reload()

        assert host.package_installed("curl")
        assert host.service_enabled("d9-node")
        assert host.service_active("d9-node")
        assert host.daemon_reloads == 1

        host.stop_service("d9-node")
        host.disable_service("d9-node")
        assert not host.service_active("d9-node")
        assert not host.service_enabled("d9-node")

    def test_seeded_files(self):
        from provisioner.host import InMemoryHost

        host = InMemoryHost(files={"/etc/os-release": "ID=ubuntu\n"}, users=["ubuntu"])

        assert host.is_file("/etc/os-release")
        assert host.is_dir("/etc")
        assert host.user_exists("ubuntu")

    def test_extract_member(self, host, release_archive):
        from provisioner.errors import HostCommandError

        host.files["/tmp/d9-node.tar.gz"] = release_archive

        host.extract_member("/tmp/d9-node.tar.gz", "d9-node", "/usr/local/bin/d9-node")

        assert host.read_text("/usr/local/bin/d9-node").endswith("d9-node")
        assert host.modes["/usr/local/bin/d9-node"] == "0755"
        with pytest.raises(HostCommandError, match="Not found in archive"):
            host.extract_member("/tmp/d9-node.tar.gz", "other", "/usr/local/bin/other")

    def test_free_space(self):
        from provisioner.host import InMemoryHost

        assert InMemoryHost(free_gb=42.5).free_space_gb("/var/lib/d9-node") == 42.5


class TestLocalHostArchiveAndDisk:
    def test_extract_member_installs_from_staging(self, local_host):
        commands = []

        def fake_run(cmd, **kwargs):
            commands.append(cmd)
            return _completed()

        with patch("provisioner.host.subprocess.run", side_effect=fake_run):
            local_host.extract_member("/tmp/d9-node.tar.gz", "d9-node", "/usr/local/bin/d9-node")

        tar_cmd, install_cmd = commands
        staging = tar_cmd[4]
        assert tar_cmd[:4] == ["tar", "-xzf", "/tmp/d9-node.tar.gz", "-C"]
        assert tar_cmd[-1] == "d9-node"
        assert install_cmd == [
            "sudo", "-n", "install", "-m", "0755",
            os.path.join(staging, "d9-node"), "/usr/local/bin/d9-node",
        ]
        assert not os.path.exists(staging)

    def test_extract_failure_skips_install(self, local_host):
        from provisioner.errors import HostCommandError

        with patch(
            "provisioner.host.subprocess.run",
            return_value=_completed(returncode=2, stderr="gzip: stdin: not in gzip format"),
        ) as mock_run:
            with pytest.raises(HostCommandError, match="not in gzip format"):
                local_host.extract_member("/tmp/d9-node.tar.gz", "d9-node", "/usr/local/bin/d9-node")

        assert mock_run.call_count == 1

    def test_free_space_walks_up_to_existing_parent(self, local_host, tmp_path):
        usage = MagicMock(free=100 * 1024 ** 3)

        with patch("provisioner.host.shutil.disk_usage", return_value=usage) as mock_usage:
            free = local_host.free_space_gb(str(tmp_path / "not" / "yet" / "created"))

        assert free == 100
        mock_usage.assert_called_once_with(str(tmp_path))
