"""
Rollback planning and execution.

Components:
    - build_rollback_plan / RollbackActions: The default five-step plan
    - RollbackExecutor: Runs a plan step by step with persistence after each step
    - RestoreBackend implementations selected by backup format
"""

from phasedrollout.rollback.backends import (
    BackupFormat,
    BackupReference,
    BulkImportRestoreBackend,
    DocumentRestoreBackend,
    RestoreBackend,
    RestoreResult,
    select_restore_backend,
)
from phasedrollout.rollback.executor import RollbackExecutor
from phasedrollout.rollback.plan import RollbackActions, build_rollback_plan

__all__ = [
    "BackupFormat",
    "BackupReference",
    "BulkImportRestoreBackend",
    "DocumentRestoreBackend",
    "RestoreBackend",
    "RestoreResult",
    "select_restore_backend",
    "RollbackExecutor",
    "RollbackActions",
    "build_rollback_plan",
]
