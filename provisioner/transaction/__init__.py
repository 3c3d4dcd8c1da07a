"""
Transactional step execution with a durable ledger.

This package provides the orchestration layer for host provisioning:
- Step ledger with write-through JSON persistence and a backup copy
- Sequential execution with reverse-order rollback on failure
- Resume of failed or interrupted transactions

Usage:
    from provisioner.transaction import TransactionManager

    manager = TransactionManager()

    # Register the ordered operations as ledger steps
    manager.initialize(operations, mode="standard", node_type="full")

    # Run them; on failure everything run so far is rolled back
    result = manager.execute()
    if result.success:
        manager.clear()
    elif result.can_resume:
        print("Fix the problem, then resume")

    # In a later process, rebuild the same operation list and continue
    manager.resume(operations)
"""

from provisioner.transaction.ledger import (
    Step,
    StepLedger,
    StepStatus,
    TransactionState,
)
from provisioner.transaction.manager import (
    TransactionManager,
    TransactionResult,
    create_transaction,
    resume_transaction,
)

__all__ = [
    "Step",
    "StepLedger",
    "StepStatus",
    "TransactionState",
    "TransactionManager",
    "TransactionResult",
    "create_transaction",
    "resume_transaction",
]
