"""
Durable step ledger.

Tracks the status of every planned step of one provisioning transaction
and persists it to a JSON file after every transition, keeping a backup
copy of the previous state next to it.

State left on disk after a failed run is the resume checkpoint; its
absence means no provisioning is in progress.
"""

import json
import logging
import os
import shutil
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from provisioner.errors import (
    LedgerCorruptError,
    LedgerError,
    LedgerNotInitializedError,
)
from provisioner.timestamps import format_local, isonow

logger = logging.getLogger(__name__)

LEDGER_VERSION = "1.0"

INTERRUPTED_ERROR = "Interrupted before completion"


class StepStatus(Enum):
    """Step status values."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


# Which statuses each transition may start from. failed -> in_progress is
# the only re-entrant edge (resume retry).
_ALLOWED_FROM = {
    StepStatus.IN_PROGRESS: {StepStatus.PENDING, StepStatus.FAILED},
    StepStatus.COMPLETED: {StepStatus.IN_PROGRESS},
    StepStatus.FAILED: {StepStatus.PENDING, StepStatus.IN_PROGRESS},
    StepStatus.SKIPPED: {StepStatus.PENDING, StepStatus.IN_PROGRESS},
}

_STATUS_MARKERS = {
    StepStatus.COMPLETED: "[x]",
    StepStatus.IN_PROGRESS: "[~]",
    StepStatus.FAILED: "[!]",
    StepStatus.SKIPPED: "[-]",
    StepStatus.PENDING: "[ ]",
}


@dataclass
class Step:
    """
    One planned unit of work.

    Attributes:
        id: Unique identifier, stable for the lifetime of the transaction
        description: Human-readable label
        status: Current status
        timestamp: Time of the last status transition (ISO format)
        error: Failure reason, only set while status is failed
        metadata: Context attached by the operation, merged across transitions
    """

    id: str
    description: str
    status: StepStatus = StepStatus.PENDING
    timestamp: str = ""
    error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data = asdict(self)
        data["status"] = self.status.value
        if self.error is None:
            del data["error"]
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Step":
        """Create from dictionary (JSON deserialization)."""
        return cls(
            id=data["id"],
            description=data["description"],
            status=StepStatus(data["status"]),
            timestamp=data.get("timestamp", ""),
            error=data.get("error"),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass
class TransactionState:
    """
    The durable record of one provisioning attempt.

    Attributes:
        transaction_id: Correlation ID used as a log prefix
        mode: Opaque installation mode tag supplied by the caller
        node_type: Opaque node type tag supplied by the caller
        started_at: Creation timestamp (ISO format)
        updated_at: Last persisted write (ISO format)
        total_steps: Number of planned steps
        current_step_index: Index of the most recently started step
        steps: Ordered steps; order drives execution and reverse rollback
        configuration: Facts the caller records as steps discover them
        metadata: Free-form transaction-level audit data
        version: Ledger format version
    """

    transaction_id: str
    mode: str
    node_type: str
    started_at: str
    updated_at: str
    total_steps: int
    current_step_index: int = 0
    steps: List[Step] = field(default_factory=list)
    configuration: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)
    version: str = LEDGER_VERSION

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data = asdict(self)
        data["steps"] = [step.to_dict() for step in self.steps]
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TransactionState":
        """Create from dictionary (JSON deserialization)."""
        steps = [Step.from_dict(s) for s in data["steps"]]
        return cls(
            transaction_id=data.get("transaction_id") or f"tx-{uuid.uuid4().hex[:8]}",
            mode=data["mode"],
            node_type=data["node_type"],
            started_at=data["started_at"],
            updated_at=data.get("updated_at", data["started_at"]),
            total_steps=data.get("total_steps", len(steps)),
            current_step_index=data.get("current_step_index", 0),
            steps=steps,
            configuration=dict(data.get("configuration") or {}),
            metadata=dict(data.get("metadata") or {}),
            version=data.get("version", LEDGER_VERSION),
        )


class StepLedger:
    """
    Persists per-step status of one transaction, write-through.

    Every transition mutates the in-memory state, stamps updated_at and
    writes the whole state to disk before returning, so a crash between
    two transitions loses at most the step that was in flight.

    Usage:
        ledger = StepLedger(state_file=Path("/tmp/state.json"))
        ledger.initialize("standard", "full", [("mkdir-1a2b", "Create directory /x")])

        ledger.start_step("mkdir-1a2b")
        ledger.complete_step("mkdir-1a2b", {"path": "/x"})

        print(ledger.get_progress())  # 100
    """

    def __init__(
        self,
        state_file: Optional[Path] = None,
        backup_file: Optional[Path] = None,
    ):
        """
        Initialize ledger.

        Args:
            state_file: Path to state JSON file (default from settings)
            backup_file: Path to backup copy (default: sibling of state_file,
                or the configured backup path when state_file is also default)
        """
        if state_file is None:
            from provisioner.settings import get_settings

            ledger_settings = get_settings().ledger
            state_file = ledger_settings.state_file
            backup_file = backup_file or ledger_settings.backup_file

        self.state_file = Path(state_file)
        self.backup_file = (
            Path(backup_file)
            if backup_file
            else self.state_file.with_name(f"{self.state_file.stem}.backup{self.state_file.suffix}")
        )

        self._state: Optional[TransactionState] = None

    @property
    def log_prefix(self) -> str:
        return f"[{self._state.transaction_id}] " if self._state else ""

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def initialize(
        self,
        mode: str,
        node_type: str,
        steps: Iterable[Tuple[str, str]],
    ) -> TransactionState:
        """
        Create a fresh transaction with every step pending.

        Args:
            mode: Installation mode tag (stored, not interpreted)
            node_type: Node type tag (stored, not interpreted)
            steps: Ordered (id, description) pairs

        Returns:
            The new TransactionState
        """
        started = isonow()
        planned = [
            Step(id=step_id, description=description, timestamp=started)
            for step_id, description in steps
        ]

        seen = set()
        for step in planned:
            if step.id in seen:
                raise LedgerError(f"Duplicate step id: {step.id}")
            seen.add(step.id)

        self._state = TransactionState(
            transaction_id=f"tx-{uuid.uuid4().hex[:8]}",
            mode=mode,
            node_type=node_type,
            started_at=started,
            updated_at=started,
            total_steps=len(planned),
            steps=planned,
        )
        # A backup left by an earlier transaction must never be recovered as this one
        self._discard_backup()
        self._save_state()

        logger.info(
            f"{self.log_prefix}Initialized transaction with {len(planned)} steps "
            f"(mode={mode}, node_type={node_type})"
        )
        return self._state

    def load(self) -> Optional[TransactionState]:
        """
        Load persisted state, falling back to the backup copy.

        Returns:
            The loaded state, or None if neither file exists

        Raises:
            LedgerCorruptError: Both the state file and its backup are unreadable
        """
        candidates = [p for p in (self.state_file, self.backup_file) if p.exists()]
        if not candidates:
            logger.info("No existing ledger, nothing in progress")
            self._state = None
            return None

        problems = []
        for path in candidates:
            try:
                state = self._read_state(path)
            except (OSError, ValueError, KeyError, TypeError) as e:
                logger.error(f"Unreadable ledger {path}: {e}")
                problems.append(f"{path}: {e}")
                continue

            if path == self.backup_file:
                logger.warning(f"Recovered ledger from backup copy {path}")

            self._state = state
            logger.info(
                f"{self.log_prefix}Loaded ledger: {len(self.get_completed_steps())}/"
                f"{state.total_steps} steps completed"
            )
            self._recover_interrupted_steps()
            return state

        raise LedgerCorruptError(f"Ledger unreadable: {'; '.join(problems)}")

    def clear(self) -> None:
        """Delete the persisted state and its backup and forget the in-memory state."""
        # Backup goes first so an interrupted clear never leaves only a stale backup.
        for path in (self.backup_file, self.state_file):
            try:
                path.unlink()
            except FileNotFoundError:
                pass
            except OSError as e:
                raise LedgerError(f"Failed to remove {path}: {e}") from e

        logger.info(f"{self.log_prefix}Ledger cleared")
        self._state = None

    # =========================================================================
    # Transitions
    # =========================================================================

    def start_step(self, step_id: str) -> Step:
        """Mark a step as in progress."""
        state = self._require_state()
        step = self._transition(step_id, StepStatus.IN_PROGRESS)
        step.error = None
        state.current_step_index = state.steps.index(step)
        self._save_state()
        return step

    def complete_step(self, step_id: str, metadata: Optional[Dict[str, Any]] = None) -> Step:
        """Mark a step as completed, merging any metadata the operation reported."""
        step = self._transition(step_id, StepStatus.COMPLETED)
        step.error = None
        if metadata:
            step.metadata = {**step.metadata, **metadata}
        self._save_state()
        return step

    def fail_step(self, step_id: str, error: str) -> Step:
        """Mark a step as failed."""
        step = self._transition(step_id, StepStatus.FAILED)
        step.error = error
        self._save_state()
        logger.error(f"{self.log_prefix}Step {step_id} failed: {error}")
        return step

    def skip_step(self, step_id: str, reason: Optional[str] = None) -> Step:
        """Mark a step as skipped (already done or not applicable)."""
        step = self._transition(step_id, StepStatus.SKIPPED)
        if reason:
            step.metadata = {**step.metadata, "skip_reason": reason}
        self._save_state()
        return step

    def annotate_step(self, step_id: str, metadata: Dict[str, Any]) -> Step:
        """Merge metadata into a step without changing its status."""
        step = self._find_step(step_id)
        step.metadata = {**step.metadata, **metadata}
        self._save_state()
        return step

    def update_configuration(self, configuration: Dict[str, Any]) -> None:
        """Merge values into the transaction configuration."""
        state = self._require_state()
        state.configuration = {**state.configuration, **configuration}
        self._save_state()

    def update_metadata(self, metadata: Dict[str, Any]) -> None:
        """Merge values into the transaction-level metadata."""
        state = self._require_state()
        state.metadata = {**state.metadata, **metadata}
        self._save_state()

    # =========================================================================
    # Queries
    # =========================================================================

    def get_state(self) -> Optional[TransactionState]:
        return self._state

    def get_step(self, step_id: str) -> Optional[Step]:
        if not self._state:
            return None
        for step in self._state.steps:
            if step.id == step_id:
                return step
        return None

    def get_pending_steps(self) -> List[Step]:
        """Steps that still need to run (pending, or failed and retryable)."""
        return self._steps_with(StepStatus.PENDING, StepStatus.FAILED)

    def get_completed_steps(self) -> List[Step]:
        return self._steps_with(StepStatus.COMPLETED)

    def get_skipped_steps(self) -> List[Step]:
        return self._steps_with(StepStatus.SKIPPED)

    def get_progress(self) -> int:
        """Completed steps as a percentage of the total (0-100)."""
        if not self._state or self._state.total_steps == 0:
            return 0

        completed = len(self.get_completed_steps())
        return int(completed * 100 / self._state.total_steps + 0.5)

    def can_resume(self) -> bool:
        """
        True iff some work is done and some remains.

        A transaction with zero progress is fresh and one with nothing left
        is done; neither is resumable.
        """
        if not self._state:
            return False

        return bool(self.get_completed_steps()) and bool(self.get_pending_steps())

    def format_progress(self) -> str:
        """Render a human-readable progress report."""
        state = self._state
        if not state:
            return "No installation in progress"

        rule = "=" * 50
        lines = [
            "",
            "Installation Progress",
            rule,
            f"Transaction: {state.transaction_id}",
            f"Mode: {state.mode}",
            f"Node Type: {state.node_type}",
            f"Started: {format_local(state.started_at)}",
            f"Progress: {self.get_progress()}% "
            f"({len(self.get_completed_steps())}/{state.total_steps} steps)",
            "",
            "Steps:",
        ]

        for step in state.steps:
            lines.append(f"  {_STATUS_MARKERS[step.status]} {step.description}")
            if step.error:
                lines.append(f"      Error: {step.error}")
            if step.metadata.get("rolled_back"):
                lines.append("      (effect rolled back)")

        lines.append(rule)
        return "\n".join(lines)

    def display_progress(self) -> None:
        print(self.format_progress())

    # =========================================================================
    # Internals
    # =========================================================================

    def _require_state(self) -> TransactionState:
        if not self._state:
            raise LedgerNotInitializedError("State not initialized")
        return self._state

    def _find_step(self, step_id: str) -> Step:
        self._require_state()
        step = self.get_step(step_id)
        if not step:
            raise LedgerError(f"Step not found: {step_id}")
        return step

    def _transition(self, step_id: str, target: StepStatus) -> Step:
        step = self._find_step(step_id)
        if step.status not in _ALLOWED_FROM[target]:
            raise LedgerError(
                f"Illegal transition for step {step_id}: "
                f"{step.status.value} -> {target.value}"
            )

        step.status = target
        step.timestamp = isonow()
        return step

    def _steps_with(self, *statuses: StepStatus) -> List[Step]:
        if not self._state:
            return []
        return [step for step in self._state.steps if step.status in statuses]

    def _recover_interrupted_steps(self) -> None:
        """A step still in_progress on load was cut off mid-flight; make it retryable."""
        interrupted = self._steps_with(StepStatus.IN_PROGRESS)
        if not interrupted:
            return

        for step in interrupted:
            step.status = StepStatus.FAILED
            step.error = INTERRUPTED_ERROR
            step.timestamp = isonow()
            logger.warning(f"{self.log_prefix}Step {step.id} was interrupted, marked for retry")

        self._save_state()

    @staticmethod
    def _read_state(path: Path) -> TransactionState:
        with open(path, "r") as f:
            data = json.load(f)
        return TransactionState.from_dict(data)

    def _belongs_to_current(self, path: Path) -> bool:
        """True if path holds a readable copy of the current transaction."""
        try:
            persisted = self._read_state(path)
        except (OSError, ValueError, KeyError, TypeError):
            return False
        return persisted.transaction_id == self._state.transaction_id

    def _discard_backup(self) -> None:
        try:
            self.backup_file.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            raise LedgerError(f"Failed to remove stale backup {self.backup_file}: {e}") from e

    def _save_state(self) -> None:
        """
        Persist state to disk.

        The previous primary is copied to the backup path first, then the
        new state replaces the primary atomically. After every write both
        copies exist.
        """
        state = self._require_state()
        state.updated_at = isonow()

        try:
            self.state_file.parent.mkdir(parents=True, exist_ok=True)
            self.backup_file.parent.mkdir(parents=True, exist_ok=True)

            if self.state_file.exists():
                if self._belongs_to_current(self.state_file):
                    shutil.copy2(self.state_file, self.backup_file)
                else:
                    logger.warning(
                        f"{self.log_prefix}Existing state file is unreadable or from another "
                        f"transaction, not copying it to the backup"
                    )

            # Write atomically using temp file
            temp_file = self.state_file.with_suffix(".tmp")
            with open(temp_file, "w") as f:
                json.dump(state.to_dict(), f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            temp_file.replace(self.state_file)

            if not self.backup_file.exists():
                shutil.copy2(self.state_file, self.backup_file)

        except OSError as e:
            raise LedgerError(f"Failed to save state: {e}") from e
