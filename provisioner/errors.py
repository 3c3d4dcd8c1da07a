"""
Error taxonomy for transactional provisioning.

Error Hierarchy:
- ProvisioningError: base for everything raised by this package
  - StepFailure: a step could not move forward
    - ValidationFailure: precondition not met, nothing was changed
    - ExecutionFailure: execute() failed, possibly after a partial effect
  - RollbackFailure: rollback() failed during compensation (logged, never fatal)
  - LedgerError: the durable step ledger could not be read, written or queried
    - LedgerNotInitializedError: no state loaded or initialized
    - LedgerCorruptError: neither the state file nor its backup is readable
  - ResumeError: nothing to resume, or the operation list does not match
  - HostCommandError: a host command exited non-zero

Usage:
    from provisioner.errors import ExecutionFailure, ResumeError

    raise ExecutionFailure(step.description, "useradd exited 9", step_id=step.id)
"""

from typing import Optional


class ProvisioningError(Exception):
    """Base class for all provisioning errors."""


# =============================================================================
# Step failures (abort forward progress, trigger rollback)
# =============================================================================

class StepFailure(ProvisioningError):
    """
    A step failed and the transaction must compensate.

    The message is what ends up in TransactionResult.error, so it names the
    step description followed by the underlying reason.
    """

    reason_template = "{description} failed: {reason}"

    def __init__(self, description: str, reason: str, step_id: Optional[str] = None):
        self.description = description
        self.reason = reason
        self.step_id = step_id
        super().__init__(self.reason_template.format(description=description, reason=reason))


class ValidationFailure(StepFailure):
    """Precondition check failed before any change was made."""

    reason_template = "{description} validation failed: {reason}"


class ExecutionFailure(StepFailure):
    """The operation's execute() failed."""


class RollbackFailure(ProvisioningError):
    """
    An operation's rollback() failed.

    Collected and reported, never raised out of the compensation loop.
    """

    def __init__(self, description: str, reason: str, step_id: Optional[str] = None):
        self.description = description
        self.reason = reason
        self.step_id = step_id
        super().__init__(f"Rollback of {description} failed: {reason}")


# =============================================================================
# Ledger / resume errors (raised immediately to the caller)
# =============================================================================

class LedgerError(ProvisioningError):
    """Step ledger read/write or lookup failed."""


class LedgerNotInitializedError(LedgerError):
    """Ledger has no state; initialize() or load() first."""


class LedgerCorruptError(LedgerError):
    """Both the state file and its backup are unreadable."""


class ResumeError(ProvisioningError):
    """Resume was requested but cannot proceed safely."""


class HostCommandError(ProvisioningError):
    """A command run on the host exited with a non-zero status."""

    def __init__(self, args, returncode: int, stderr: str = ""):
        self.command = list(args)
        self.returncode = returncode
        self.stderr = stderr
        detail = stderr.strip() or f"exit status {returncode}"
        super().__init__(f"{' '.join(self.command)}: {detail}")
