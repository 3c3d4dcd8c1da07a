"""
Reversible operations and sequential composite execution.

An Operation is one unit of provisioning work that knows how to undo
itself. CompositeOperation runs a list of them in order and compensates in
exact reverse order when one fails.

Usage:
    from provisioner.operations import CompositeOperation

    setup = CompositeOperation("Prepare host", [make_dir, add_user])
    result = setup.execute()
    if not result.success:
        print(result.error)  # "<step> failed: <reason>"
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

from provisioner.errors import (
    ExecutionFailure,
    RollbackFailure,
    StepFailure,
    ValidationFailure,
)

logger = logging.getLogger(__name__)


@dataclass
class OperationResult:
    """
    Outcome of execute(), rollback() or validate().

    Attributes:
        success: Whether the call achieved what it set out to do
        value: Produced value (validate() reports its verdict here)
        error: Failure reason, set only when success is False
        context: Facts discovered along the way (merged into step metadata)
    """

    success: bool
    value: Any = None
    error: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)


class Operation(ABC):
    """
    Contract for reversible system modifications.

    Implementations capture everything they need at construction time and
    record whatever state their rollback() needs while executing.
    """

    description: str = ""
    op_type: str = "operation"

    @abstractmethod
    def execute(self) -> OperationResult:
        """Apply the change."""

    @abstractmethod
    def rollback(self) -> OperationResult:
        """Undo a prior successful execute(); a no-op if it never ran."""

    @abstractmethod
    def validate(self) -> OperationResult:
        """Cheap precondition check run right before execute()."""

    @abstractmethod
    def is_already_done(self) -> bool:
        """Idempotency probe; True means the host already has this change."""


class BaseOperation(Operation):
    """Common plumbing for concrete operations."""

    def __init__(self, description: Optional[str] = None):
        if description is not None:
            self.description = description
        self._execution_state: Dict[str, Any] = {
            "executed": False,
            "previous_state": None,
        }

    @property
    def executed(self) -> bool:
        return bool(self._execution_state["executed"])

    def validate(self) -> OperationResult:
        return self.success_result(True)

    def is_already_done(self) -> bool:
        return False

    def success_result(self, value: Any = None, **context) -> OperationResult:
        return OperationResult(success=True, value=value, context=context)

    def error_result(self, error: str, **context) -> OperationResult:
        return OperationResult(success=False, error=error, context=context)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.description!r}>"


# =============================================================================
# Step helpers shared by CompositeOperation and TransactionManager
# =============================================================================


def probe_already_done(op: Operation, step_id: Optional[str] = None) -> bool:
    """Run the idempotency probe; a crashing probe counts as a failed precondition."""
    try:
        return bool(op.is_already_done())
    except Exception as e:
        raise ValidationFailure(op.description, f"idempotency check raised: {e}", step_id=step_id)


def validate_or_raise(op: Operation, step_id: Optional[str] = None) -> None:
    """Raise ValidationFailure unless validate() succeeds with a truthy value."""
    try:
        validation = op.validate()
    except Exception as e:
        raise ValidationFailure(op.description, str(e), step_id=step_id)

    if not validation.success or not validation.value:
        raise ValidationFailure(
            op.description,
            validation.error or "Prerequisites not met",
            step_id=step_id,
        )


def execute_or_raise(op: Operation, step_id: Optional[str] = None) -> OperationResult:
    """Run execute(); raise ExecutionFailure on a failed result or an exception."""
    try:
        result = op.execute()
    except Exception as e:
        raise ExecutionFailure(op.description, str(e), step_id=step_id)

    if not result.success:
        raise ExecutionFailure(
            op.description,
            result.error or "Operation failed",
            step_id=step_id,
        )
    return result


def rollback_all(
    executed: Iterable[Tuple[Optional[str], Operation]],
    log_prefix: str = "",
) -> List[RollbackFailure]:
    """
    Roll back operations in reverse of the order given.

    Best-effort compensation: a failed rollback is logged and collected and
    the loop moves on to the next candidate.

    Args:
        executed: (step_id, operation) pairs in forward execution order
        log_prefix: Correlation prefix for log lines

    Returns:
        RollbackFailure for every rollback that failed or raised
    """
    failures: List[RollbackFailure] = []

    for step_id, op in reversed(list(executed)):
        logger.info(f"{log_prefix}Rolling back: {op.description}")
        try:
            result = op.rollback()
        except Exception as e:
            failure = RollbackFailure(op.description, str(e), step_id=step_id)
        else:
            if result.success:
                logger.info(f"{log_prefix}Rolled back: {op.description}")
                continue
            failure = RollbackFailure(
                op.description, result.error or "rollback reported failure", step_id=step_id
            )

        logger.error(f"{log_prefix}{failure}")
        failures.append(failure)

    return failures


# =============================================================================
# Composite
# =============================================================================


class CompositeOperation(BaseOperation):
    """
    Executes operations in order with automatic reverse-order rollback.

    Operations the host already satisfies are skipped and never rolled back.
    The children that actually ran are remembered so that rolling back the
    composite itself (e.g. when it is one step of a larger transaction)
    undoes exactly those.
    """

    op_type = "composite"

    def __init__(self, description: str, operations: List[Operation]):
        super().__init__(description)
        self.operations = list(operations)
        self._executed: List[Operation] = []

    def execute(self) -> OperationResult:
        executed: List[Operation] = []
        skipped: List[str] = []

        try:
            for op in self.operations:
                if probe_already_done(op):
                    logger.info(f"Skipping {op.description} (already done)")
                    skipped.append(op.description)
                    continue

                validate_or_raise(op)
                execute_or_raise(op)
                executed.append(op)

        except StepFailure as e:
            logger.error(f"Operation failed: {e}")
            logger.warning(f"Rolling back {len(executed)} operation(s) of {self.description}")

            failures = rollback_all((None, op) for op in executed)
            self._executed = []

            return self.error_result(
                str(e),
                failed_operation=e.description,
                skipped=skipped,
                rollback_failures=[str(f) for f in failures],
            )

        self._executed = executed
        self._execution_state["executed"] = bool(executed)
        return self.success_result()

    def rollback(self) -> OperationResult:
        if not self._executed:
            return self.success_result()

        failures = rollback_all((None, op) for op in self._executed)
        self._executed = []
        self._execution_state["executed"] = False

        if failures:
            return self.error_result(
                "; ".join(str(f) for f in failures),
                rollback_failures=[str(f) for f in failures],
            )
        return self.success_result()


class NoOpOperation(BaseOperation):
    """Placeholder step that is always already satisfied."""

    op_type = "noop"

    def __init__(self, description: str = "No operation"):
        super().__init__(description)

    def execute(self) -> OperationResult:
        return self.success_result()

    def rollback(self) -> OperationResult:
        return self.success_result()

    def is_already_done(self) -> bool:
        return True
