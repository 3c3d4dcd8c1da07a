"""
Host access for provisioning operations.

Operations never touch the machine directly; they are handed a Host and
go through it for files, users, packages and services. LocalHost talks to
the real system, InMemoryHost keeps everything in memory for tests.

Usage:
    from provisioner.host import LocalHost

    host = LocalHost()
    if not host.user_exists("d9-node"):
        host.create_user("d9-node", system=True, shell="/bin/false")

    # Raw commands
    result = host.run(["systemctl", "is-active", "d9-node"])
    print(result.stdout)
"""

import hashlib
import io
import logging
import os
import posixpath
import shlex
import shutil
import subprocess
import tarfile
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Set

import requests

from provisioner.errors import HostCommandError

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    """Outcome of a command run on the host."""

    args: List[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def check(self) -> "CommandResult":
        """Raise HostCommandError unless the command succeeded."""
        if not self.ok:
            raise HostCommandError(self.args, self.returncode, self.stderr)
        return self


class Host(ABC):
    """
    Everything an operation may do to the target machine.

    Mutating methods raise HostCommandError on failure; probes return bools.
    """

    @abstractmethod
    def run(self, args: Sequence[str], privileged: bool = False) -> CommandResult:
        """Run a command and return its result without raising."""

    # Filesystem
    @abstractmethod
    def exists(self, path: str) -> bool: ...

    @abstractmethod
    def is_dir(self, path: str) -> bool: ...

    @abstractmethod
    def is_file(self, path: str) -> bool: ...

    @abstractmethod
    def read_text(self, path: str) -> str: ...

    @abstractmethod
    def make_dirs(self, path: str) -> None: ...

    @abstractmethod
    def remove(self, path: str) -> None: ...

    @abstractmethod
    def write_file(self, path: str, content: str, mode: str = "0644") -> None: ...

    @abstractmethod
    def chown(self, path: str, owner: str, recursive: bool = True) -> None: ...

    @abstractmethod
    def chmod(self, path: str, mode: str) -> None: ...

    @abstractmethod
    def sha256(self, path: str) -> str: ...

    @abstractmethod
    def download(self, url: str, destination: str) -> None: ...

    @abstractmethod
    def extract_member(
        self, archive: str, member: str, destination: str, mode: str = "0755"
    ) -> None:
        """Install one member of a gzipped tarball at destination."""

    @abstractmethod
    def free_space_gb(self, path: str) -> float:
        """Free space on the filesystem that holds (or would hold) path."""

    # Users
    @abstractmethod
    def user_exists(self, username: str) -> bool: ...

    @abstractmethod
    def create_user(
        self,
        username: str,
        system: bool = True,
        create_home: bool = False,
        shell: Optional[str] = None,
    ) -> None: ...

    @abstractmethod
    def delete_user(self, username: str) -> None: ...

    # Packages
    @abstractmethod
    def package_installed(self, name: str) -> bool: ...

    @abstractmethod
    def install_packages(self, names: Sequence[str]) -> None: ...

    # Services
    @abstractmethod
    def daemon_reload(self) -> None: ...

    @abstractmethod
    def service_enabled(self, name: str) -> bool: ...

    @abstractmethod
    def enable_service(self, name: str) -> None: ...

    @abstractmethod
    def disable_service(self, name: str) -> None: ...

    @abstractmethod
    def service_active(self, name: str) -> bool: ...

    @abstractmethod
    def start_service(self, name: str) -> None: ...

    @abstractmethod
    def stop_service(self, name: str) -> None: ...


# =============================================================================
# Local machine
# =============================================================================


class LocalHost(Host):
    """
    The machine this process runs on.

    Privileged commands are prefixed with sudo unless sudo is disabled in
    settings or the process already runs as root. Files that need root are
    staged in a temp file and moved into place with install(1).
    """

    def __init__(
        self,
        use_sudo: Optional[bool] = None,
        command_timeout: Optional[int] = None,
        download_timeout: Optional[int] = None,
        chunk_size: Optional[int] = None,
        session: Optional[requests.Session] = None,
    ):
        from provisioner.settings import get_settings

        host_settings = get_settings().host

        self.use_sudo = host_settings.use_sudo if use_sudo is None else use_sudo
        self.command_timeout = command_timeout or host_settings.command_timeout
        self.download_timeout = download_timeout or host_settings.download_timeout
        self.chunk_size = chunk_size or host_settings.download_chunk_size
        self.session = session or requests.Session()

    @property
    def _needs_sudo(self) -> bool:
        return self.use_sudo and os.geteuid() != 0

    def run(self, args: Sequence[str], privileged: bool = False) -> CommandResult:
        cmd = list(args)
        if privileged and self._needs_sudo:
            cmd = ["sudo", "-n", *cmd]

        logger.debug(f"Running: {shlex.join(cmd)}")

        try:
            proc = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.command_timeout,
            )
        except subprocess.TimeoutExpired:
            return CommandResult(cmd, -1, stderr=f"timed out after {self.command_timeout}s")
        except FileNotFoundError:
            return CommandResult(cmd, 127, stderr=f"{cmd[0]}: command not found")

        if proc.returncode != 0:
            logger.debug(f"{cmd[0]} exited {proc.returncode}: {proc.stderr.strip()}")

        return CommandResult(cmd, proc.returncode, proc.stdout, proc.stderr)

    # -------------------------------------------------------------------------
    # Filesystem
    # -------------------------------------------------------------------------

    def exists(self, path: str) -> bool:
        return os.path.lexists(path)

    def is_dir(self, path: str) -> bool:
        return os.path.isdir(path)

    def is_file(self, path: str) -> bool:
        return os.path.isfile(path)

    def read_text(self, path: str) -> str:
        try:
            return Path(path).read_text()
        except OSError as e:
            raise HostCommandError(["read", path], 1, str(e))

    def make_dirs(self, path: str) -> None:
        self.run(["mkdir", "-p", path], privileged=True).check()

    def remove(self, path: str) -> None:
        self.run(["rm", "-rf", path], privileged=True).check()

    def write_file(self, path: str, content: str, mode: str = "0644") -> None:
        fd, staged = tempfile.mkstemp(prefix="provisioner-")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(content)
            self._install_file(staged, path, mode)
        finally:
            _unlink_quietly(staged)

    def chown(self, path: str, owner: str, recursive: bool = True) -> None:
        args = ["chown", "-R", owner, path] if recursive else ["chown", owner, path]
        self.run(args, privileged=True).check()

    def chmod(self, path: str, mode: str) -> None:
        self.run(["chmod", mode, path], privileged=True).check()

    def sha256(self, path: str) -> str:
        digest = hashlib.sha256()
        try:
            with open(path, "rb") as f:
                for chunk in iter(lambda: f.read(self.chunk_size), b""):
                    digest.update(chunk)
        except OSError as e:
            raise HostCommandError(["sha256", path], 1, str(e))
        return digest.hexdigest()

    def download(self, url: str, destination: str) -> None:
        """Stream url into destination; nothing is left behind on failure."""
        logger.info(f"Downloading {url}")

        fd, staged = tempfile.mkstemp(prefix="provisioner-dl-")
        try:
            with os.fdopen(fd, "wb") as f:
                try:
                    with self.session.get(url, stream=True, timeout=self.download_timeout) as response:
                        response.raise_for_status()
                        for chunk in response.iter_content(chunk_size=self.chunk_size):
                            if chunk:
                                f.write(chunk)
                except requests.RequestException as e:
                    raise HostCommandError(["download", url], 1, str(e))

            self._install_file(staged, destination, "0644")
        finally:
            _unlink_quietly(staged)

        logger.info(f"Downloaded {url} to {destination}")

    def extract_member(
        self, archive: str, member: str, destination: str, mode: str = "0755"
    ) -> None:
        staging = tempfile.mkdtemp(prefix="provisioner-x-")
        try:
            self.run(["tar", "-xzf", archive, "-C", staging, member]).check()
            self._install_file(os.path.join(staging, member), destination, mode)
        finally:
            shutil.rmtree(staging, ignore_errors=True)

        logger.info(f"Installed {member} from {archive} to {destination}")

    def free_space_gb(self, path: str) -> float:
        # Walk up to the nearest existing ancestor; the target may not exist yet
        probe = os.path.abspath(path)
        while not os.path.exists(probe) and os.path.dirname(probe) != probe:
            probe = os.path.dirname(probe)

        try:
            usage = shutil.disk_usage(probe)
        except OSError as e:
            raise HostCommandError(["df", probe], 1, str(e))
        return usage.free / 1024 ** 3

    def _install_file(self, source: str, destination: str, mode: str) -> None:
        self.run(["install", "-m", mode, source, destination], privileged=True).check()

    # -------------------------------------------------------------------------
    # Users
    # -------------------------------------------------------------------------

    def user_exists(self, username: str) -> bool:
        return self.run(["id", "-u", username]).ok

    def create_user(
        self,
        username: str,
        system: bool = True,
        create_home: bool = False,
        shell: Optional[str] = None,
    ) -> None:
        args = ["useradd"]
        if system:
            args.append("--system")
        args.append("--create-home" if create_home else "--no-create-home")
        if shell:
            args.extend(["--shell", shell])
        args.append(username)
        self.run(args, privileged=True).check()

    def delete_user(self, username: str) -> None:
        self.run(["userdel", username], privileged=True).check()

    # -------------------------------------------------------------------------
    # Packages (dpkg / apt)
    # -------------------------------------------------------------------------

    def package_installed(self, name: str) -> bool:
        result = self.run(["dpkg-query", "-W", "-f=${Status}", name])
        return result.ok and "install ok installed" in result.stdout

    def install_packages(self, names: Sequence[str]) -> None:
        if not names:
            return
        self.run(["apt-get", "install", "-y", "-qq", *names], privileged=True).check()

    # -------------------------------------------------------------------------
    # Services (systemd)
    # -------------------------------------------------------------------------

    def daemon_reload(self) -> None:
        self.run(["systemctl", "daemon-reload"], privileged=True).check()

    def service_enabled(self, name: str) -> bool:
        result = self.run(["systemctl", "is-enabled", name])
        return result.ok and result.stdout.strip() == "enabled"

    def enable_service(self, name: str) -> None:
        self.run(["systemctl", "enable", name], privileged=True).check()

    def disable_service(self, name: str) -> None:
        self.run(["systemctl", "disable", name], privileged=True).check()

    def service_active(self, name: str) -> bool:
        result = self.run(["systemctl", "is-active", name])
        return result.ok and result.stdout.strip() == "active"

    def start_service(self, name: str) -> None:
        self.run(["systemctl", "start", name], privileged=True).check()

    def stop_service(self, name: str) -> None:
        self.run(["systemctl", "stop", name], privileged=True).check()


def _unlink_quietly(path: str) -> None:
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass


# =============================================================================
# In-memory fake
# =============================================================================


class InMemoryHost(Host):
    """
    A host that exists only in memory.

    Every mutating call is appended to ``calls`` as ``[action, *args]`` so
    tests can assert on order. ``fail(action)`` makes the next and all later
    calls of that action raise HostCommandError until ``recover(action)``.

    Usage:
        host = InMemoryHost(packages={"curl"})
        host.fail("write_file", "disk full")
    """

    def __init__(
        self,
        files: Optional[Dict[str, str]] = None,
        dirs: Iterable[str] = (),
        users: Iterable[str] = (),
        packages: Iterable[str] = (),
        remote: Optional[Dict[str, bytes]] = None,
        free_gb: float = 500.0,
    ):
        self.files: Dict[str, bytes] = {
            _norm(p): c.encode() for p, c in (files or {}).items()
        }
        self.dirs: Set[str] = {"/"}
        for d in dirs:
            self._add_dir(d)
        for p in self.files:
            self._add_dir(posixpath.dirname(p))

        self.users: Set[str] = set(users)
        self.packages: Set[str] = set(packages)
        self.enabled_services: Set[str] = set()
        self.active_services: Set[str] = set()
        self.owners: Dict[str, str] = {}
        self.modes: Dict[str, str] = {}
        self.remote: Dict[str, bytes] = dict(remote or {})
        self.free_gb = free_gb

        self.calls: List[List[str]] = []
        self.daemon_reloads = 0
        self._failures: Dict[str, str] = {}

    def fail(self, action: str, message: str = "injected failure") -> None:
        self._failures[action] = message

    def recover(self, action: str) -> None:
        self._failures.pop(action, None)

    def _record(self, action: str, *args) -> None:
        self.calls.append([action, *(str(a) for a in args)])
        if action in self._failures:
            raise HostCommandError([action, *(str(a) for a in args)], 1, self._failures[action])

    def _add_dir(self, path: str) -> None:
        path = _norm(path)
        while path not in self.dirs:
            self.dirs.add(path)
            path = posixpath.dirname(path)

    def run(self, args: Sequence[str], privileged: bool = False) -> CommandResult:
        try:
            self._record("run", *args)
        except HostCommandError as e:
            return CommandResult(list(args), e.returncode, stderr=e.stderr)
        return CommandResult(list(args), 0)

    # Filesystem

    def exists(self, path: str) -> bool:
        path = _norm(path)
        return path in self.files or path in self.dirs

    def is_dir(self, path: str) -> bool:
        return _norm(path) in self.dirs

    def is_file(self, path: str) -> bool:
        return _norm(path) in self.files

    def read_text(self, path: str) -> str:
        path = _norm(path)
        if path not in self.files:
            raise HostCommandError(["read", path], 1, "No such file")
        return self.files[path].decode()

    def make_dirs(self, path: str) -> None:
        self._record("make_dirs", path)
        self._add_dir(path)

    def remove(self, path: str) -> None:
        self._record("remove", path)
        path = _norm(path)
        prefix = path.rstrip("/") + "/"
        self.files = {p: c for p, c in self.files.items() if p != path and not p.startswith(prefix)}
        self.dirs = {d for d in self.dirs if d == "/" or (d != path and not d.startswith(prefix))}

    def write_file(self, path: str, content: str, mode: str = "0644") -> None:
        self._record("write_file", path)
        path = _norm(path)
        self._add_dir(posixpath.dirname(path))
        self.files[path] = content.encode()
        self.modes[path] = mode

    def chown(self, path: str, owner: str, recursive: bool = True) -> None:
        self._record("chown", path, owner)
        self.owners[_norm(path)] = owner

    def chmod(self, path: str, mode: str) -> None:
        self._record("chmod", path, mode)
        self.modes[_norm(path)] = mode

    def sha256(self, path: str) -> str:
        path = _norm(path)
        if path not in self.files:
            raise HostCommandError(["sha256", path], 1, "No such file")
        return hashlib.sha256(self.files[path]).hexdigest()

    def download(self, url: str, destination: str) -> None:
        self._record("download", url, destination)
        if url not in self.remote:
            raise HostCommandError(["download", url], 1, "404 Not Found")
        destination = _norm(destination)
        self._add_dir(posixpath.dirname(destination))
        self.files[destination] = self.remote[url]

    def extract_member(
        self, archive: str, member: str, destination: str, mode: str = "0755"
    ) -> None:
        self._record("extract_member", archive, member, destination)
        archive = _norm(archive)
        if archive not in self.files:
            raise HostCommandError(["tar", archive], 2, "No such file")

        try:
            with tarfile.open(fileobj=io.BytesIO(self.files[archive]), mode="r:gz") as tar:
                extracted = tar.extractfile(member)
                if extracted is None:
                    raise HostCommandError(["tar", archive, member], 2, f"{member}: not a regular file")
                content = extracted.read()
        except KeyError:
            raise HostCommandError(["tar", archive, member], 2, f"{member}: Not found in archive")
        except tarfile.TarError as e:
            raise HostCommandError(["tar", archive], 2, str(e))

        destination = _norm(destination)
        self._add_dir(posixpath.dirname(destination))
        self.files[destination] = content
        self.modes[destination] = mode

    def free_space_gb(self, path: str) -> float:
        return self.free_gb

    # Users

    def user_exists(self, username: str) -> bool:
        return username in self.users

    def create_user(
        self,
        username: str,
        system: bool = True,
        create_home: bool = False,
        shell: Optional[str] = None,
    ) -> None:
        self._record("create_user", username)
        if username in self.users:
            raise HostCommandError(["useradd", username], 9, f"user '{username}' already exists")
        self.users.add(username)

    def delete_user(self, username: str) -> None:
        self._record("delete_user", username)
        if username not in self.users:
            raise HostCommandError(["userdel", username], 6, f"user '{username}' does not exist")
        self.users.discard(username)

    # Packages

    def package_installed(self, name: str) -> bool:
        return name in self.packages

    def install_packages(self, names: Sequence[str]) -> None:
        self._record("install_packages", *names)
        self.packages.update(names)

    # Services

    def daemon_reload(self) -> None:
        self._record("daemon_reload")
        self.daemon_reloads += 1

    def service_enabled(self, name: str) -> bool:
        return name in self.enabled_services

    def enable_service(self, name: str) -> None:
        self._record("enable_service", name)
        self.enabled_services.add(name)

    def disable_service(self, name: str) -> None:
        self._record("disable_service", name)
        self.enabled_services.discard(name)

    def service_active(self, name: str) -> bool:
        return name in self.active_services

    def start_service(self, name: str) -> None:
        self._record("start_service", name)
        self.active_services.add(name)

    def stop_service(self, name: str) -> None:
        self._record("stop_service", name)
        self.active_services.discard(name)


def _norm(path: str) -> str:
    return posixpath.normpath(path) if path else "/"
