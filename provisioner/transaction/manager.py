"""
Transactional execution of provisioning operations.

Binds an ordered list of operations to ledger-tracked steps, runs them one
at a time and, when a step fails, rolls back everything run in the same
invocation in reverse order. The ledger survives the process, so a failed
or interrupted run can be resumed later.
"""

import logging
import uuid
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from provisioner.errors import (
    LedgerError,
    LedgerNotInitializedError,
    ResumeError,
    StepFailure,
)
from provisioner.operations import (
    Operation,
    execute_or_raise,
    probe_already_done,
    rollback_all,
    validate_or_raise,
)
from provisioner.timestamps import isonow
from provisioner.transaction.ledger import Step, StepLedger, TransactionState

logger = logging.getLogger(__name__)


@dataclass
class TransactionResult:
    """
    Aggregate outcome of execute() or resume().

    Attributes:
        success: True when every pending step completed or was skipped
        completed_steps: Steps in completed status (total on success)
        total_steps: Planned steps
        error: The failure that triggered rollback, if any
        can_resume: Whether the ledger left behind is resumable
        failed_step_id: Step whose validation or execution failed
        rollback_failures: Compensation problems, best-effort and non-fatal
    """

    success: bool
    completed_steps: int
    total_steps: int
    error: Optional[str] = None
    can_resume: bool = False
    failed_step_id: Optional[str] = None
    rollback_failures: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class TransactionManager:
    """
    Coordinates operations with the step ledger.

    Usage:
        manager = TransactionManager(state_file=Path("/tmp/state.json"))
        manager.initialize(operations, mode="standard", node_type="full")

        result = manager.execute()
        if result.success:
            manager.clear()

        # Later, in a new process, with the same operation list:
        manager = TransactionManager(state_file=Path("/tmp/state.json"))
        result = manager.resume(operations)
    """

    def __init__(
        self,
        state_file: Optional[Path] = None,
        backup_file: Optional[Path] = None,
        ledger: Optional[StepLedger] = None,
    ):
        """Initialize manager with its own ledger unless one is supplied."""
        self.ledger = ledger or StepLedger(state_file=state_file, backup_file=backup_file)
        self._operations: Dict[str, Operation] = {}

    @property
    def log_prefix(self) -> str:
        return self.ledger.log_prefix

    # =========================================================================
    # Setup
    # =========================================================================

    def initialize(
        self,
        operations: Iterable[Operation],
        mode: str,
        node_type: str,
        configuration: Optional[Dict[str, Any]] = None,
    ) -> TransactionState:
        """
        Start a new transaction for the given operations.

        Args:
            operations: Ordered operations, one step each
            mode: Installation mode tag (stored for display only)
            node_type: Node type tag (stored for display only)
            configuration: Initial configuration values to record

        Returns:
            The freshly persisted TransactionState
        """
        operations = list(operations)
        steps = [(self._generate_step_id(op), op.description) for op in operations]

        state = self.ledger.initialize(mode, node_type, steps)
        self._operations = {step_id: op for (step_id, _), op in zip(steps, operations)}

        if configuration:
            self.ledger.update_configuration(configuration)

        return state

    def load_existing(self, operations: Optional[Iterable[Operation]] = None) -> bool:
        """
        Load persisted state for resume.

        Step ids are generated per transaction, so after a restart the
        caller must supply the same operation list, in the same order, to
        rebind operations to steps.

        Args:
            operations: Operation list structurally identical to the original

        Returns:
            True if a transaction was found, False if none is in progress

        Raises:
            LedgerCorruptError: Ledger and backup are both unreadable
            ResumeError: Supplied operations do not match the persisted steps
        """
        state = self.ledger.load()
        if state is None:
            self._operations = {}
            return False

        if operations is not None:
            self._bind(state, list(operations))
        else:
            self._operations = {
                step_id: op
                for step_id, op in self._operations.items()
                if self.ledger.get_step(step_id) is not None
            }

        return True

    def attach_operation(self, step_id: str, operation: Operation) -> None:
        """Bind a single operation to an existing step."""
        if self.ledger.get_step(step_id) is None:
            raise LedgerError(f"Step not found: {step_id}")
        self._operations[step_id] = operation

    # =========================================================================
    # Execution
    # =========================================================================

    def execute(self) -> TransactionResult:
        """
        Run every pending step in order.

        Returns:
            TransactionResult; on failure, everything executed in this call
            has been rolled back and the ledger records the failed step

        Raises:
            LedgerNotInitializedError: No transaction initialized or loaded
            ResumeError: A pending step has no operation bound to it
        """
        state = self.ledger.get_state()
        if not state:
            raise LedgerNotInitializedError("Transaction not initialized")

        pending = self.ledger.get_pending_steps()
        unbound = [step.id for step in pending if step.id not in self._operations]
        if unbound:
            raise ResumeError(f"No operation bound to step(s): {', '.join(unbound)}")

        logger.info(
            f"{self.log_prefix}Starting execution: {len(pending)} of "
            f"{state.total_steps} steps pending"
        )

        executed: List[Tuple[str, Operation]] = []

        try:
            for step in pending:
                operation = self._operations[step.id]
                if self._run_step(step, operation):
                    executed.append((step.id, operation))

        except StepFailure as e:
            return self._compensate(state, e, executed)

        logger.info(f"{self.log_prefix}Transaction completed successfully")

        return TransactionResult(
            success=True,
            completed_steps=state.total_steps,
            total_steps=state.total_steps,
            can_resume=False,
        )

    def resume(self, operations: Optional[Iterable[Operation]] = None) -> TransactionResult:
        """
        Continue a previously failed or interrupted transaction.

        Completed and skipped steps are not revisited; failed steps are
        retried.

        Raises:
            ResumeError: No persisted transaction, or it is not resumable
            LedgerCorruptError: Ledger and backup are both unreadable
        """
        if not self.load_existing(operations):
            raise ResumeError("No existing transaction to resume")

        if not self.ledger.can_resume():
            raise ResumeError(
                f"{self.log_prefix}Transaction cannot be resumed "
                f"({len(self.ledger.get_completed_steps())} completed, "
                f"{len(self.ledger.get_pending_steps())} pending)"
            )

        logger.info(f"{self.log_prefix}Resuming transaction at {self.get_progress()}%")
        return self.execute()

    def clear(self) -> None:
        """Remove persisted state after a successful run."""
        self.ledger.clear()
        self._operations.clear()

    # =========================================================================
    # Progress
    # =========================================================================

    def get_progress(self) -> int:
        return self.ledger.get_progress()

    def format_progress(self) -> str:
        return self.ledger.format_progress()

    def display_progress(self) -> None:
        self.ledger.display_progress()

    # =========================================================================
    # Internals
    # =========================================================================

    @staticmethod
    def _generate_step_id(operation: Operation) -> str:
        return f"{operation.op_type}-{uuid.uuid4().hex[:8]}"

    def _bind(self, state: TransactionState, operations: List[Operation]) -> None:
        """Rebind operations to persisted steps by position."""
        if len(operations) != len(state.steps):
            raise ResumeError(
                f"Operation list has {len(operations)} entries but the persisted "
                f"transaction has {len(state.steps)} steps"
            )

        for index, (step, operation) in enumerate(zip(state.steps, operations)):
            if step.description != operation.description or not step.id.startswith(
                f"{operation.op_type}-"
            ):
                raise ResumeError(
                    f"Operation {index} ({operation.description!r}) does not match "
                    f"persisted step {step.id} ({step.description!r})"
                )

        self._operations = {step.id: op for step, op in zip(state.steps, operations)}

    def _run_step(self, step: Step, operation: Operation) -> bool:
        """
        Drive one step through the ledger.

        Returns:
            True if the operation executed, False if it was skipped

        Raises:
            StepFailure: Validation or execution failed (already recorded)
        """
        logger.info(
            f"{self.log_prefix}Executing: {step.description}",
            extra={
                "transaction_id": self.ledger.get_state().transaction_id,
                "step_id": step.id,
                "op_type": operation.op_type,
            },
        )
        self.ledger.start_step(step.id)

        try:
            if probe_already_done(operation, step.id):
                logger.info(f"{self.log_prefix}Already done, skipping: {step.description}")
                self.ledger.skip_step(step.id, "Already completed")
                return False

            validate_or_raise(operation, step.id)
            result = execute_or_raise(operation, step.id)

        except StepFailure as e:
            self.ledger.fail_step(step.id, e.reason)
            raise

        self.ledger.complete_step(step.id, result.context)
        logger.info(f"{self.log_prefix}Completed: {step.description}")
        return True

    def _compensate(
        self,
        state: TransactionState,
        failure: StepFailure,
        executed: List[Tuple[str, Operation]],
    ) -> TransactionResult:
        """Roll back this call's executed steps and build the failure result."""
        logger.error(f"{self.log_prefix}Transaction failed: {failure}")

        if executed:
            logger.warning(f"{self.log_prefix}Rolling back {len(executed)} step(s)")
        else:
            logger.info(f"{self.log_prefix}Nothing to roll back")

        failures = rollback_all(executed, self.log_prefix)

        # Rollback does not rewrite step status; the undone effect is noted
        # in step metadata instead.
        failed_by_step = {f.step_id: f for f in failures}
        rolled_back_at = isonow()
        for step_id, _ in executed:
            if step_id in failed_by_step:
                note = {"rolled_back": False, "rollback_error": failed_by_step[step_id].reason}
            else:
                note = {"rolled_back": True, "rolled_back_at": rolled_back_at}
            self.ledger.annotate_step(step_id, note)

        self.ledger.update_metadata(
            {"last_error": str(failure), "last_failed_step": failure.step_id}
        )

        can_resume = self.ledger.can_resume()
        if can_resume:
            logger.info(f"{self.log_prefix}State saved, transaction can be resumed")

        return TransactionResult(
            success=False,
            completed_steps=len(self.ledger.get_completed_steps()),
            total_steps=state.total_steps,
            error=str(failure),
            can_resume=can_resume,
            failed_step_id=failure.step_id,
            rollback_failures=[str(f) for f in failures],
        )


def create_transaction(
    operations: Iterable[Operation],
    mode: str,
    node_type: str,
    configuration: Optional[Dict[str, Any]] = None,
    state_file: Optional[Path] = None,
) -> TransactionManager:
    """Create a manager and initialize a new transaction in one call."""
    manager = TransactionManager(state_file=state_file)
    manager.initialize(operations, mode, node_type, configuration)
    return manager


def resume_transaction(
    operations: Optional[Iterable[Operation]] = None,
    state_file: Optional[Path] = None,
) -> Optional[TransactionManager]:
    """Load an existing transaction, or return None if nothing is in progress."""
    manager = TransactionManager(state_file=state_file)
    if not manager.load_existing(operations):
        return None
    return manager
