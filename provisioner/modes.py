"""
Installation modes.

A mode fixes where the node keeps its data, which account runs it and how
its keys are generated. The three modes form a closed set; every derived
property is looked up in a table keyed by ModeType, and the tables are
checked for completeness at import time so adding a mode without
describing it fails immediately.

Usage:
    from provisioner.modes import from_selection, mode_capabilities

    mode = from_selection("easy", os_user="ubuntu")   # StandardMode
    caps = mode_capabilities(mode)
    if caps.requires_user_creation:
        ...
"""

from dataclasses import dataclass
from enum import Enum
from typing import ClassVar, Dict, Union

DEFAULT_DATA_DIRECTORY = "/var/lib/d9-node"
DEFAULT_SERVICE_USER = "d9-node"


class ModeType(Enum):
    LEGACY = "legacy"
    STANDARD = "standard"
    ADVANCED = "advanced"


class KeyGeneration(Enum):
    STANDARD = "standard"
    HD_DERIVED = "hd-derived"


@dataclass(frozen=True)
class LegacyMode:
    """Existing installation running under the distribution's login user."""

    service_user: str

    type: ClassVar[ModeType] = ModeType.LEGACY
    key_generation: ClassVar[KeyGeneration] = KeyGeneration.STANDARD

    @property
    def data_directory(self) -> str:
        return f"/home/{self.service_user}/node-data"


@dataclass(frozen=True)
class StandardMode:
    """Dedicated system user, standard key generation."""

    data_directory: str = DEFAULT_DATA_DIRECTORY
    service_user: str = DEFAULT_SERVICE_USER

    type: ClassVar[ModeType] = ModeType.STANDARD
    key_generation: ClassVar[KeyGeneration] = KeyGeneration.STANDARD


@dataclass(frozen=True)
class AdvancedMode:
    """Dedicated system user, HD-derived keys."""

    data_directory: str = DEFAULT_DATA_DIRECTORY
    service_user: str = DEFAULT_SERVICE_USER

    type: ClassVar[ModeType] = ModeType.ADVANCED
    key_generation: ClassVar[KeyGeneration] = KeyGeneration.HD_DERIVED


InstallationMode = Union[LegacyMode, StandardMode, AdvancedMode]


@dataclass(frozen=True)
class ModeCapabilities:
    requires_user_creation: bool
    requires_root_privileges: bool
    supports_hd_key_derivation: bool
    data_directory_permissions: str
    service_file_template: str


# =============================================================================
# Per-mode tables
# =============================================================================

_CAPABILITIES: Dict[ModeType, ModeCapabilities] = {
    ModeType.LEGACY: ModeCapabilities(
        requires_user_creation=False,
        requires_root_privileges=True,
        supports_hd_key_derivation=False,
        data_directory_permissions="755",
        service_file_template="legacy",
    ),
    ModeType.STANDARD: ModeCapabilities(
        requires_user_creation=True,
        requires_root_privileges=True,
        supports_hd_key_derivation=False,
        data_directory_permissions="750",
        service_file_template="standard",
    ),
    ModeType.ADVANCED: ModeCapabilities(
        requires_user_creation=True,
        requires_root_privileges=True,
        supports_hd_key_derivation=True,
        data_directory_permissions="750",
        service_file_template="standard",
    ),
}

_DISPLAY_NAMES: Dict[ModeType, str] = {
    ModeType.LEGACY: "Legacy Mode (Ubuntu/Debian user)",
    ModeType.STANDARD: "Standard Mode (Dedicated user)",
    ModeType.ADVANCED: "Advanced Mode (HD key derivation)",
}

_DESCRIPTIONS: Dict[ModeType, str] = {
    ModeType.LEGACY: (
        "Maintains compatibility with existing installations running under "
        "the ubuntu/debian user"
    ),
    ModeType.STANDARD: (
        "Recommended for new installations - runs under a dedicated d9-node system user"
    ),
    ModeType.ADVANCED: "HD key derivation with a dedicated system user",
}

for _table in (_CAPABILITIES, _DISPLAY_NAMES, _DESCRIPTIONS):
    _missing = set(ModeType) - set(_table)
    if _missing:
        raise RuntimeError(f"Mode table incomplete, missing: {sorted(m.value for m in _missing)}")

# Accepted selection strings; "easy" and "hard" are the interactive aliases.
SELECTIONS: Dict[str, ModeType] = {
    "legacy": ModeType.LEGACY,
    "standard": ModeType.STANDARD,
    "easy": ModeType.STANDARD,
    "advanced": ModeType.ADVANCED,
    "hard": ModeType.ADVANCED,
}


# =============================================================================
# Factories
# =============================================================================


def create_mode(
    mode_type: ModeType,
    os_user: str,
    data_directory: str = DEFAULT_DATA_DIRECTORY,
    service_user: str = DEFAULT_SERVICE_USER,
) -> InstallationMode:
    """Build the mode for mode_type; os_user only matters for legacy."""
    if mode_type is ModeType.LEGACY:
        if not os_user:
            raise ValueError("Legacy mode needs the OS user that runs the node")
        return LegacyMode(service_user=os_user)
    if mode_type is ModeType.STANDARD:
        return StandardMode(data_directory=data_directory, service_user=service_user)
    if mode_type is ModeType.ADVANCED:
        return AdvancedMode(data_directory=data_directory, service_user=service_user)
    raise ValueError(f"Unknown mode type: {mode_type!r}")


def from_selection(selection: str, os_user: str = "", **kwargs) -> InstallationMode:
    """
    Parse an operator's mode selection.

    Raises:
        ValueError: selection is not one of SELECTIONS
    """
    try:
        mode_type = SELECTIONS[selection.strip().lower()]
    except KeyError:
        raise ValueError(
            f"Unknown installation mode {selection!r} (expected one of: {', '.join(SELECTIONS)})"
        )
    return create_mode(mode_type, os_user, **kwargs)


def detect(os_user: str, has_existing_legacy_installation: bool) -> InstallationMode:
    """Pick the mode for a host; only an existing legacy install decides on its own."""
    if has_existing_legacy_installation:
        return LegacyMode(service_user=os_user)
    raise ValueError("Mode must be explicitly selected for new installations")


# =============================================================================
# Accessors
# =============================================================================


def mode_capabilities(mode: InstallationMode) -> ModeCapabilities:
    return _CAPABILITIES[mode.type]


def requires_user_creation(mode: InstallationMode) -> bool:
    return mode_capabilities(mode).requires_user_creation


def supports_hd_key_derivation(mode: InstallationMode) -> bool:
    return mode.key_generation is KeyGeneration.HD_DERIVED


def keystore_path(mode: InstallationMode) -> str:
    return f"{mode.data_directory}/chains/d9_main/keystore"


def display_name(mode: InstallationMode) -> str:
    return _DISPLAY_NAMES[mode.type]


def describe(mode: InstallationMode) -> str:
    return _DESCRIPTIONS[mode.type]
