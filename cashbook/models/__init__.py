"""
Data Models Package

This package contains all Pydantic models used in Cashbook.
All data flowing through the system must conform to these schemas.
"""

from cashbook.models.records import (
    Customer,
    Stats,
    Transaction,
    TransactionType,
    new_record_id,
    utcnow,
)
from cashbook.models.sync import (
    DeviceInfo,
    MergeResult,
    RefreshFailure,
    RefreshResult,
    RemoteSnapshot,
    SyncOutcome,
    SyncResult,
    SyncSnapshot,
    SyncState,
)
from cashbook.models.audit import (
    SyncEvent,
    SyncEventBuilder,
    SyncEventType,
    SyncSeverity,
)

__all__ = [
    # Record models
    "Customer",
    "Stats",
    "Transaction",
    "TransactionType",
    "new_record_id",
    "utcnow",
    # Sync models
    "DeviceInfo",
    "MergeResult",
    "RefreshFailure",
    "RefreshResult",
    "RemoteSnapshot",
    "SyncOutcome",
    "SyncResult",
    "SyncSnapshot",
    "SyncState",
    # Sync activity models
    "SyncEvent",
    "SyncEventBuilder",
    "SyncEventType",
    "SyncSeverity",
]
