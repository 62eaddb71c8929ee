"""
Mirror sync engine.
"""

from drivesync.sync.engine import (
    Action,
    PlanItem,
    SyncEngine,
    SyncFailure,
    SyncResult,
    is_valid_name,
    plan_directory,
    sync,
)

__all__ = [
    "Action",
    "PlanItem",
    "SyncEngine",
    "SyncFailure",
    "SyncResult",
    "is_valid_name",
    "plan_directory",
    "sync",
]
