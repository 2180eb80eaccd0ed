"""
Sync Activity Models for Cashbook

Every push, pull, merge and refresh produces one event. The history lets a
settings screen show when data last reached the cloud and why it did not.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from cashbook.models.records import utcnow


class SyncEventType(str, Enum):
    """Types of sync activity we record."""
    # Push
    PUSH_SUCCEEDED = "push_succeeded"
    PUSH_SKIPPED = "push_skipped"
    PUSH_DEFERRED = "push_deferred"
    PUSH_FAILED = "push_failed"

    # Pull
    PULL_COMPLETED = "pull_completed"
    PULL_FAILED = "pull_failed"

    # Login merge and manual refresh
    MERGE_COMPLETED = "merge_completed"
    REFRESH_COMPLETED = "refresh_completed"
    REFRESH_FAILED = "refresh_failed"

    # Local store
    JOURNAL_REPLAYED = "journal_replayed"


class SyncSeverity(str, Enum):
    """Severity level for sync events."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class SyncEvent(BaseModel):
    """A single recorded sync event."""

    event_id: UUID = Field(default_factory=uuid4)
    timestamp: datetime = Field(default_factory=utcnow)

    event_type: SyncEventType
    severity: SyncSeverity = SyncSeverity.INFO

    identity: Optional[str] = Field(
        default=None,
        description="User the event concerns"
    )
    description: str = Field(
        ...,
        max_length=500,
        description="Human-readable description of what happened"
    )
    details: dict[str, Any] = Field(default_factory=dict)
    error_message: Optional[str] = None

    def to_log_dict(self) -> dict:
        """
        Convert to a dictionary suitable for structured logging.
        """
        return {
            "event_id": str(self.event_id),
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "identity": self.identity,
            "description": self.description,
            "details": self.details,
            "error_message": self.error_message,
        }


class SyncEventBuilder:
    """
    Helper class to build sync events with common patterns.

    Usage:
        event = SyncEventBuilder.push_succeeded(user_id, 3, 12)
        event = SyncEventBuilder.push_failed(user_id, "timeout")
    """

    @staticmethod
    def push_succeeded(
        identity: str,
        customers: int,
        transactions: int,
    ) -> SyncEvent:
        return SyncEvent(
            event_type=SyncEventType.PUSH_SUCCEEDED,
            identity=identity,
            description="Data synced to the cloud",
            details={
                "customers": customers,
                "transactions": transactions,
            },
        )

    @staticmethod
    def push_skipped(identity: str) -> SyncEvent:
        return SyncEvent(
            event_type=SyncEventType.PUSH_SKIPPED,
            severity=SyncSeverity.DEBUG,
            identity=identity,
            description="Cloud copy already up to date",
        )

    @staticmethod
    def push_deferred(identity: Optional[str], reason: str) -> SyncEvent:
        return SyncEvent(
            event_type=SyncEventType.PUSH_DEFERRED,
            identity=identity,
            description=f"Sync deferred: {reason}",
            details={"reason": reason},
        )

    @staticmethod
    def push_failed(identity: str, error: str) -> SyncEvent:
        return SyncEvent(
            event_type=SyncEventType.PUSH_FAILED,
            severity=SyncSeverity.ERROR,
            identity=identity,
            description="Sync failed, will retry later",
            error_message=error,
        )

    @staticmethod
    def pull_completed(identity: str, found: bool) -> SyncEvent:
        return SyncEvent(
            event_type=SyncEventType.PULL_COMPLETED,
            identity=identity,
            description=(
                "Loaded data from the cloud" if found
                else "No cloud data found yet"
            ),
            details={"found": found},
        )

    @staticmethod
    def pull_failed(identity: str, error: str) -> SyncEvent:
        return SyncEvent(
            event_type=SyncEventType.PULL_FAILED,
            severity=SyncSeverity.ERROR,
            identity=identity,
            description="Could not load data from the cloud",
            error_message=error,
        )

    @staticmethod
    def merge_completed(
        identity: str,
        customers_adopted: bool,
        transactions_adopted: bool,
    ) -> SyncEvent:
        return SyncEvent(
            event_type=SyncEventType.MERGE_COMPLETED,
            identity=identity,
            description="Login merge finished",
            details={
                "customers_adopted": customers_adopted,
                "transactions_adopted": transactions_adopted,
            },
        )

    @staticmethod
    def refresh_completed(
        identity: str,
        customers: int,
        transactions: int,
    ) -> SyncEvent:
        return SyncEvent(
            event_type=SyncEventType.REFRESH_COMPLETED,
            identity=identity,
            description=f"Refreshed {customers} customers and {transactions} transactions",
            details={
                "customers": customers,
                "transactions": transactions,
            },
        )

    @staticmethod
    def refresh_failed(
        identity: Optional[str],
        failure: str,
        error: Optional[str] = None,
    ) -> SyncEvent:
        return SyncEvent(
            event_type=SyncEventType.REFRESH_FAILED,
            severity=SyncSeverity.WARNING,
            identity=identity,
            description=f"Refresh from the cloud failed: {failure}",
            details={"failure": failure},
            error_message=error,
        )

    @staticmethod
    def journal_replayed(identity: str, collections: list[str]) -> SyncEvent:
        return SyncEvent(
            event_type=SyncEventType.JOURNAL_REPLAYED,
            severity=SyncSeverity.WARNING,
            identity=identity,
            description="Finished an interrupted local write",
            details={"collections": collections},
        )
