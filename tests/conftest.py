"""Shared pytest fixtures for provisioner tests."""
import os
import sys
from typing import List, Optional

import pytest

# Add project root to path
_PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _PROJECT_ROOT)


# =============================================================================
# Settings isolation
# =============================================================================

@pytest.fixture(autouse=True)
def _isolated_settings(tmp_path, monkeypatch):
    """Point the default ledger into tmp_path and reset the settings singleton."""
    from provisioner.settings import get_settings

    monkeypatch.setenv("PROVISIONER_LEDGER_STATE_FILE", str(tmp_path / "default-state.json"))
    monkeypatch.setenv("PROVISIONER_LEDGER_BACKUP_FILE", str(tmp_path / "default-state.backup.json"))
    monkeypatch.setenv("PROVISIONER_LOG_FORMAT", "text")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture(autouse=True)
def _reset_logging():
    """Drop handlers configure_logging() attached during a test."""
    import logging

    yield
    logger = logging.getLogger("provisioner")
    for handler in logger.handlers:
        handler.close()
    logger.handlers = []
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def state_file(tmp_path):
    """Ledger path in a scratch directory."""
    return tmp_path / "state" / "installation-state.json"


@pytest.fixture
def host():
    from provisioner.host import InMemoryHost

    return InMemoryHost()


@pytest.fixture
def release_archive() -> bytes:
    """Gzipped tarball shaped like a d9-node release: one executable named d9-node."""
    import io
    import tarfile

    payload = b"\x7fELF d9-node"
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as tar:
        info = tarfile.TarInfo("d9-node")
        info.size = len(payload)
        info.mode = 0o755
        tar.addfile(info, io.BytesIO(payload))
    return buffer.getvalue()


@pytest.fixture
def release_remote(release_archive):
    """Remote content for a NodeSettings: release tarball and chain spec."""

    def remote(settings=None):
        from provisioner.settings import get_settings

        settings = settings or get_settings().node
        return {
            settings.binary_url: release_archive,
            settings.chain_spec_url: b'{"name": "D9 Mainnet"}',
        }

    return remote


# =============================================================================
# Recording fake operations
# =============================================================================

@pytest.fixture
def call_log() -> List[str]:
    """Shared log of "<name>.<method>" entries, in call order."""
    return []


@pytest.fixture
def make_op(call_log):
    """Factory for operations that record every call into call_log.

    Usage:
        a = make_op("A")
        c = make_op("C", fail_execute=True)
    """
    from provisioner.operations import BaseOperation

    class RecordingOperation(BaseOperation):
        op_type = "fake"

        def __init__(
            self,
            name: str,
            fail_execute: bool = False,
            raise_execute: bool = False,
            fail_rollback: bool = False,
            raise_rollback: bool = False,
            invalid: bool = False,
            done: bool = False,
            context: Optional[dict] = None,
        ):
            super().__init__(f"Step {name}")
            self.name = name
            self.fail_execute = fail_execute
            self.raise_execute = raise_execute
            self.fail_rollback = fail_rollback
            self.raise_rollback = raise_rollback
            self.invalid = invalid
            self.done = done
            self.context = context or {}

        def is_already_done(self):
            call_log.append(f"{self.name}.probe")
            return self.done

        def validate(self):
            call_log.append(f"{self.name}.validate")
            if self.invalid:
                return self.error_result("precondition missing")
            return self.success_result(True)

        def execute(self):
            call_log.append(f"{self.name}.execute")
            if self.raise_execute:
                raise RuntimeError("boom")
            if self.fail_execute:
                return self.error_result("disk full")
            self._execution_state["executed"] = True
            return self.success_result(**self.context)

        def rollback(self):
            call_log.append(f"{self.name}.rollback")
            if self.raise_rollback:
                raise RuntimeError("rollback exploded")
            if self.fail_rollback:
                return self.error_result("cannot undo")
            self._execution_state["executed"] = False
            return self.success_result()

    return RecordingOperation


def calls_of(call_log: List[str], method: str) -> List[str]:
    """Names of operations whose given method was called, in order."""
    suffix = f".{method}"
    return [entry[: -len(suffix)] for entry in call_log if entry.endswith(suffix)]


@pytest.fixture
def calls(call_log):
    """calls("execute") -> ["A", "B"]"""
    return lambda method: calls_of(call_log, method)
