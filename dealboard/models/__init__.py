"""Database models for dealboard"""

from dealboard.models.user import User

from dealboard.models.deals import (
    DealRecord,
    OwnerMapping
)

from dealboard.models.sync import (
    SyncState,
    SyncRun,
    RUN_STARTED,
    RUN_SUCCEEDED,
    RUN_FAILED
)

from dealboard.models.contest import (
    Contest,
    ContestEntry
)

__all__ = [
    "User",
    "DealRecord",
    "OwnerMapping",
    "SyncState",
    "SyncRun",
    "RUN_STARTED",
    "RUN_SUCCEEDED",
    "RUN_FAILED",
    "Contest",
    "ContestEntry",
]
