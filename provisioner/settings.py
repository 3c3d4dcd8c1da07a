"""
Central configuration using Pydantic BaseSettings.

Every path, name and timeout the provisioner touches is resolved here so
tests and dry runs can point the ledger and the host at scratch locations.

Usage:
    from provisioner.settings import get_settings

    settings = get_settings()
    print(settings.ledger.state_file)

Lazy initialization: get_settings() creates the singleton on first call.
Tests can reset via get_settings.cache_clear().
"""

from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings


# =============================================================================
# Nested Settings Groups
# =============================================================================


class LedgerSettings(BaseSettings):
    """Where the durable step ledger lives."""

    model_config = {"env_prefix": "PROVISIONER_LEDGER_", "extra": "ignore"}

    state_file: Path = Path("/var/lib/d9-manager/.installation-state.json")
    backup_file: Path = Path("/var/lib/d9-manager/.installation-state.backup.json")


class HostSettings(BaseSettings):
    """How commands and downloads are run against the local host."""

    model_config = {"env_prefix": "PROVISIONER_HOST_", "extra": "ignore"}

    use_sudo: bool = True
    command_timeout: int = 300
    download_timeout: int = 120
    download_chunk_size: int = 1024 * 1024


class NodeSettings(BaseSettings):
    """Node binary, service unit and filesystem layout."""

    model_config = {"env_prefix": "PROVISIONER_NODE_", "extra": "ignore"}

    binary_path: str = "/usr/local/bin/d9-node"
    binary_url: str = (
        "https://github.com/D-Nine-Chain/d9-node/releases/latest/download/d9-node.tar.gz"
    )
    binary_sha256: Optional[str] = None
    download_path: str = "/tmp/d9-node.tar.gz"
    binary_archive_member: str = "d9-node"
    chain_spec_path: str = "/usr/local/bin/new-main-spec.json"
    chain_spec_url: str = (
        "https://raw.githubusercontent.com/D-Nine-Chain/d9_node/main/new-main-spec.json"
    )
    chain_spec_sha256: Optional[str] = None

    service_name: str = "d9-node"
    service_user: str = "d9-node"
    service_group: str = "d9-node"
    systemd_dir: str = "/etc/systemd/system"

    data_dir: str = "/var/lib/d9-node"
    port: int = 40100

    packages: List[str] = ["curl", "jq", "wget"]

    @field_validator("port")
    @classmethod
    def _check_port(cls, value: int) -> int:
        if not 1024 <= value <= 65535:
            raise ValueError(f"port must be between 1024 and 65535, got {value}")
        return value

    @property
    def service_file_path(self) -> str:
        """Full path of the systemd unit file."""
        return f"{self.systemd_dir}/{self.service_name}.service"


# =============================================================================
# Root Settings
# =============================================================================


class AppSettings(BaseSettings):
    """Root settings composing all sub-settings."""

    model_config = {"env_prefix": "PROVISIONER_", "extra": "ignore", "env_file": ".env", "env_file_encoding": "utf-8"}

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"
    log_file: str = ""

    # Nested groups (initialized separately to support env_prefix)
    ledger: LedgerSettings = None  # type: ignore[assignment]
    host: HostSettings = None  # type: ignore[assignment]
    node: NodeSettings = None  # type: ignore[assignment]

    @model_validator(mode="before")
    @classmethod
    def _init_nested(cls, values):
        """Initialize nested settings from environment."""
        if values.get("ledger") is None:
            values["ledger"] = LedgerSettings()
        if values.get("host") is None:
            values["host"] = HostSettings()
        if values.get("node") is None:
            values["node"] = NodeSettings()
        return values

    @field_validator("log_format")
    @classmethod
    def _check_log_format(cls, value: str) -> str:
        value = value.lower()
        if value not in ("json", "text"):
            raise ValueError(f"log_format must be 'json' or 'text', got {value!r}")
        return value


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    """
    Get the application settings singleton.

    Lazy-initialized on first call. Validates all env vars (fail-fast).
    Tests can reset via: get_settings.cache_clear()
    """
    return AppSettings()
