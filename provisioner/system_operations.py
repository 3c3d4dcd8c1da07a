"""
Concrete operations that change the host.

Each operation captures a Host and its parameters at construction time and
remembers, while executing, what it needs to undo itself. Host command
failures are reported as failed OperationResults; anything unexpected is
left to propagate and is converted by the executor.

If an operation fails halfway through execute() (e.g. the directory was
created but chown failed) it cleans up its own partial effect before
reporting the failure, because the executor never rolls back the step
that failed.
"""

import logging
import posixpath
import re
from typing import List, Optional, Sequence

from provisioner.errors import HostCommandError
from provisioner.host import Host
from provisioner.operations import BaseOperation, OperationResult

logger = logging.getLogger(__name__)

_USERNAME_RE = re.compile(r"^[a-z_][a-z0-9_-]{0,31}$")
_SHA256_RE = re.compile(r"^[0-9a-f]{64}$")


class CreateDirectoryOperation(BaseOperation):
    """Create a directory, optionally setting owner and permissions."""

    op_type = "create_directory"

    def __init__(
        self,
        host: Host,
        path: str,
        owner: Optional[str] = None,
        permissions: Optional[str] = None,
    ):
        super().__init__(f"Create directory {path}")
        self.host = host
        self.path = path
        self.owner = owner
        self.permissions = permissions

    def validate(self) -> OperationResult:
        if not posixpath.isabs(self.path):
            return self.error_result(f"Path must be absolute: {self.path}")
        if self.host.is_file(self.path):
            return self.error_result(f"A file already exists at {self.path}")
        return self.success_result(True)

    def is_already_done(self) -> bool:
        return self.host.is_dir(self.path)

    def execute(self) -> OperationResult:
        self._execution_state["previous_state"] = {"existed": self.host.exists(self.path)}

        try:
            self.host.make_dirs(self.path)
        except HostCommandError as e:
            return self.error_result(str(e))
        self._execution_state["executed"] = True

        try:
            if self.owner:
                self.host.chown(self.path, self.owner)
            if self.permissions:
                self.host.chmod(self.path, self.permissions)
        except HostCommandError as e:
            self.rollback()
            return self.error_result(str(e))

        return self.success_result(
            path=self.path, owner=self.owner, permissions=self.permissions
        )

    def rollback(self) -> OperationResult:
        if not self.executed:
            return self.success_result()

        previous = self._execution_state["previous_state"] or {}
        if previous.get("existed"):
            return self.success_result()

        try:
            self.host.remove(self.path)
        except HostCommandError as e:
            return self.error_result(str(e))

        self._execution_state["executed"] = False
        return self.success_result()


class CreateUserOperation(BaseOperation):
    """Create a (by default system) user account."""

    op_type = "create_user"

    def __init__(
        self,
        host: Host,
        username: str,
        system: bool = True,
        create_home: bool = False,
        shell: Optional[str] = "/bin/false",
    ):
        super().__init__(f"Create user {username}")
        self.host = host
        self.username = username
        self.system = system
        self.create_home = create_home
        self.shell = shell

    def validate(self) -> OperationResult:
        if not _USERNAME_RE.match(self.username):
            return self.error_result(f"Invalid username: {self.username!r}")
        return self.success_result(True)

    def is_already_done(self) -> bool:
        return self.host.user_exists(self.username)

    def execute(self) -> OperationResult:
        try:
            self.host.create_user(
                self.username,
                system=self.system,
                create_home=self.create_home,
                shell=self.shell,
            )
        except HostCommandError as e:
            return self.error_result(str(e))

        self._execution_state["executed"] = True
        return self.success_result(username=self.username)

    def rollback(self) -> OperationResult:
        if not self.executed:
            return self.success_result()

        try:
            self.host.delete_user(self.username)
        except HostCommandError as e:
            return self.error_result(str(e))

        self._execution_state["executed"] = False
        return self.success_result()


class DownloadFileOperation(BaseOperation):
    """Download a file, verifying its SHA-256 digest when one is given."""

    op_type = "download_file"

    def __init__(
        self,
        host: Host,
        url: str,
        destination: str,
        expected_sha256: Optional[str] = None,
    ):
        super().__init__(f"Download {posixpath.basename(url) or url}")
        self.host = host
        self.url = url
        self.destination = destination
        self.expected_sha256 = expected_sha256.lower() if expected_sha256 else None

    def validate(self) -> OperationResult:
        if not self.url.startswith(("https://", "http://")):
            return self.error_result(f"Unsupported URL: {self.url}")
        if self.expected_sha256 and not _SHA256_RE.match(self.expected_sha256):
            return self.error_result("Expected checksum is not a SHA-256 hex digest")
        return self.success_result(True)

    def is_already_done(self) -> bool:
        if not self.host.is_file(self.destination):
            return False
        if not self.expected_sha256:
            return True
        return self.host.sha256(self.destination) == self.expected_sha256

    def execute(self) -> OperationResult:
        try:
            self.host.download(self.url, self.destination)
        except HostCommandError as e:
            return self.error_result(str(e))
        self._execution_state["executed"] = True

        if not self.expected_sha256:
            return self.success_result(path=self.destination)

        try:
            actual = self.host.sha256(self.destination)
        except HostCommandError as e:
            self.rollback()
            return self.error_result(str(e))

        if actual != self.expected_sha256:
            self.rollback()
            return self.error_result(
                f"File integrity verification failed: expected {self.expected_sha256}, got {actual}"
            )

        return self.success_result(path=self.destination, sha256=actual)

    def rollback(self) -> OperationResult:
        if not self.executed:
            return self.success_result()

        try:
            self.host.remove(self.destination)
        except HostCommandError as e:
            return self.error_result(str(e))

        self._execution_state["executed"] = False
        return self.success_result()


class InstallBinaryOperation(BaseOperation):
    """Extract an executable from a downloaded tarball and install it."""

    op_type = "install_binary"

    def __init__(
        self,
        host: Host,
        archive: str,
        member: str,
        destination: str,
        mode: str = "0755",
    ):
        super().__init__(f"Install {posixpath.basename(destination)}")
        self.host = host
        self.archive = archive
        self.member = member
        self.destination = destination
        self.mode = mode

    def validate(self) -> OperationResult:
        if not posixpath.isabs(self.destination):
            return self.error_result(f"Install path must be absolute: {self.destination}")
        if not self.host.is_file(self.archive):
            return self.error_result(f"Archive not found: {self.archive}")
        return self.success_result(True)

    def is_already_done(self) -> bool:
        return self.host.is_file(self.destination)

    def execute(self) -> OperationResult:
        self._execution_state["previous_state"] = {"existed": self.host.exists(self.destination)}

        try:
            self.host.extract_member(self.archive, self.member, self.destination, self.mode)
        except HostCommandError as e:
            return self.error_result(str(e))

        self._execution_state["executed"] = True
        return self.success_result(path=self.destination, member=self.member)

    def rollback(self) -> OperationResult:
        if not self.executed:
            return self.success_result()

        previous = self._execution_state["previous_state"] or {}
        if previous.get("existed"):
            logger.warning(f"Leaving replaced {self.destination} in place")
            return self.success_result()

        try:
            self.host.remove(self.destination)
        except HostCommandError as e:
            return self.error_result(str(e))

        self._execution_state["executed"] = False
        return self.success_result()


class InstallPackagesOperation(BaseOperation):
    """
    Install system packages.

    Rollback deliberately leaves packages installed: other software on the
    host may depend on them.
    """

    op_type = "install_packages"

    def __init__(self, host: Host, packages: Sequence[str]):
        self.packages: List[str] = list(packages)
        super().__init__(f"Install packages: {', '.join(self.packages)}")
        self.host = host

    def validate(self) -> OperationResult:
        if not self.packages:
            return self.error_result("No packages to install")
        return self.success_result(True)

    def is_already_done(self) -> bool:
        return all(self.host.package_installed(p) for p in self.packages)

    def execute(self) -> OperationResult:
        missing = [p for p in self.packages if not self.host.package_installed(p)]
        self._execution_state["previous_state"] = {"newly_installed": missing}

        try:
            self.host.install_packages(missing)
        except HostCommandError as e:
            return self.error_result(str(e))

        self._execution_state["executed"] = True
        return self.success_result(installed=missing)

    def rollback(self) -> OperationResult:
        if self.executed:
            previous = self._execution_state["previous_state"] or {}
            installed = previous.get("newly_installed") or []
            if installed:
                logger.warning(
                    f"Leaving packages installed: {', '.join(installed)} "
                    f"(may be required by other software)"
                )
        return self.success_result()


class CreateServiceFileOperation(BaseOperation):
    """Write a systemd unit file and reload the daemon."""

    op_type = "create_service_file"

    def __init__(self, host: Host, service_name: str, content: str, path: str):
        super().__init__(f"Create service {service_name}")
        self.host = host
        self.service_name = service_name
        self.content = content
        self.path = path

    def validate(self) -> OperationResult:
        if "[Service]" not in self.content:
            return self.error_result("Unit file has no [Service] section")
        return self.success_result(True)

    def is_already_done(self) -> bool:
        return self.host.is_file(self.path) and self.host.read_text(self.path) == self.content

    def execute(self) -> OperationResult:
        previous = self.host.read_text(self.path) if self.host.is_file(self.path) else None
        self._execution_state["previous_state"] = {"content": previous}

        try:
            self.host.write_file(self.path, self.content, "0644")
        except HostCommandError as e:
            return self.error_result(str(e))
        self._execution_state["executed"] = True

        try:
            self.host.daemon_reload()
        except HostCommandError as e:
            self.rollback()
            return self.error_result(str(e))

        return self.success_result(path=self.path, replaced=previous is not None)

    def rollback(self) -> OperationResult:
        if not self.executed:
            return self.success_result()

        previous = (self._execution_state["previous_state"] or {}).get("content")
        try:
            if previous is None:
                self.host.remove(self.path)
            else:
                self.host.write_file(self.path, previous, "0644")
            self.host.daemon_reload()
        except HostCommandError as e:
            return self.error_result(str(e))

        self._execution_state["executed"] = False
        return self.success_result()


class EnableServiceOperation(BaseOperation):
    op_type = "enable_service"

    def __init__(self, host: Host, service_name: str):
        super().__init__(f"Enable service {service_name}")
        self.host = host
        self.service_name = service_name

    def is_already_done(self) -> bool:
        return self.host.service_enabled(self.service_name)

    def execute(self) -> OperationResult:
        try:
            self.host.enable_service(self.service_name)
        except HostCommandError as e:
            return self.error_result(str(e))

        self._execution_state["executed"] = True
        return self.success_result(service=self.service_name)

    def rollback(self) -> OperationResult:
        if not self.executed:
            return self.success_result()

        try:
            self.host.disable_service(self.service_name)
        except HostCommandError as e:
            return self.error_result(str(e))

        self._execution_state["executed"] = False
        return self.success_result()


class StartServiceOperation(BaseOperation):
    op_type = "start_service"

    def __init__(self, host: Host, service_name: str):
        super().__init__(f"Start service {service_name}")
        self.host = host
        self.service_name = service_name

    def is_already_done(self) -> bool:
        return self.host.service_active(self.service_name)

    def execute(self) -> OperationResult:
        try:
            self.host.start_service(self.service_name)
        except HostCommandError as e:
            return self.error_result(str(e))

        self._execution_state["executed"] = True
        return self.success_result(service=self.service_name)

    def rollback(self) -> OperationResult:
        if not self.executed:
            return self.success_result()

        try:
            self.host.stop_service(self.service_name)
        except HostCommandError as e:
            return self.error_result(str(e))

        self._execution_state["executed"] = False
        return self.success_result()


class StopServiceOperation(BaseOperation):
    """Stop a running service; rollback starts it again."""

    op_type = "stop_service"

    def __init__(self, host: Host, service_name: str):
        super().__init__(f"Stop service {service_name}")
        self.host = host
        self.service_name = service_name

    def is_already_done(self) -> bool:
        return not self.host.service_active(self.service_name)

    def execute(self) -> OperationResult:
        try:
            self.host.stop_service(self.service_name)
        except HostCommandError as e:
            return self.error_result(str(e))

        self._execution_state["executed"] = True
        return self.success_result(service=self.service_name)

    def rollback(self) -> OperationResult:
        if not self.executed:
            return self.success_result()

        try:
            self.host.start_service(self.service_name)
        except HostCommandError as e:
            return self.error_result(str(e))

        self._execution_state["executed"] = False
        return self.success_result()
