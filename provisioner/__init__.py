"""
Transactional host provisioning for D9 nodes.

This package consolidates:
- operations / system_operations: reversible units of work on a Host
- transaction: durable step ledger and the executor with rollback and resume
- modes / node_config / plan: what gets installed and in which order
- cli: the node-provisioner command
"""

__version__ = "0.1.0"

from .errors import (
    ExecutionFailure,
    HostCommandError,
    LedgerCorruptError,
    LedgerError,
    LedgerNotInitializedError,
    ProvisioningError,
    ResumeError,
    RollbackFailure,
    StepFailure,
    ValidationFailure,
)

from .operations import (
    BaseOperation,
    CompositeOperation,
    NoOpOperation,
    Operation,
    OperationResult,
)

from .transaction import (
    StepLedger,
    StepStatus,
    TransactionManager,
    TransactionResult,
)

__all__ = [
    "__version__",
    "BaseOperation",
    "CompositeOperation",
    "ExecutionFailure",
    "HostCommandError",
    "LedgerCorruptError",
    "LedgerError",
    "LedgerNotInitializedError",
    "NoOpOperation",
    "Operation",
    "OperationResult",
    "ProvisioningError",
    "ResumeError",
    "RollbackFailure",
    "StepFailure",
    "StepLedger",
    "StepStatus",
    "TransactionManager",
    "TransactionResult",
    "ValidationFailure",
]
