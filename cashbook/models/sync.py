"""
Sync Models for Cashbook

Result and payload types exchanged between the sync engine, the remote
document store and the UI.

DESIGN DECISION: Expected conditions (offline, guest user, no cloud data)
are returned as discriminated results rather than raised. The UI decides
what to show from the outcome enum, never by parsing error strings.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from cashbook.models.records import Timestamp, utcnow


class SyncOutcome(str, Enum):
    """What happened to a push request."""
    SYNCED = "synced"                  # Snapshot written to the cloud
    UP_TO_DATE = "up_to_date"          # Nothing changed since the last push
    OFFLINE = "offline"                # Deferred until connectivity returns
    IN_PROGRESS = "in_progress"        # Coalesced into the running push
    NOT_APPLICABLE = "not_applicable"  # Guest data never leaves the device
    FAILED = "failed"                  # Marked pending for a later retry


class RefreshFailure(str, Enum):
    """Why a forced refresh from the cloud did not happen."""
    OFFLINE = "offline"
    NOT_AUTHENTICATED = "not-authenticated"
    NO_REMOTE_DATA = "no-remote-data"
    LOCAL_WRITE_FAILED = "local-write-failed"
    REMOTE_ERROR = "remote-error"


class SyncResult(BaseModel):
    """Result of a push request."""

    outcome: SyncOutcome
    pending: bool = Field(
        default=False,
        description="A push is still owed and will run on the next trigger"
    )
    error: Optional[str] = None
    synced_at: Optional[datetime] = None

    @property
    def success(self) -> bool:
        return self.outcome in (SyncOutcome.SYNCED, SyncOutcome.UP_TO_DATE)


class DeviceInfo(BaseModel):
    """Metadata about the device that wrote the snapshot."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    platform: str
    sync_time: Timestamp = Field(default_factory=utcnow)


class SyncSnapshot(BaseModel):
    """
    The full payload merge-written to the per-user cloud document.

    Records are carried in their JSON storage form.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    customers: list[dict[str, Any]] = Field(default_factory=list)
    transactions: list[dict[str, Any]] = Field(default_factory=list)
    last_synced_at: Timestamp = Field(default_factory=utcnow)
    device_info: DeviceInfo

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class RemoteSnapshot(BaseModel):
    """Collections read back from the cloud document."""

    customers: list[dict[str, Any]] = Field(default_factory=list)
    transactions: list[dict[str, Any]] = Field(default_factory=list)
    last_synced_at: Optional[str] = None

    @classmethod
    def from_document(cls, document: Mapping[str, Any]) -> "RemoteSnapshot":
        """Build from a decoded document, tolerating missing or odd fields."""
        def records(key: str) -> list[dict[str, Any]]:
            value = document.get(key) or []
            if not isinstance(value, list):
                return []
            return [item for item in value if isinstance(item, dict)]

        last_synced_at = document.get("lastSyncedAt")
        return cls(
            customers=records("customers"),
            transactions=records("transactions"),
            last_synced_at=str(last_synced_at) if last_synced_at else None,
        )


class MergeResult(BaseModel):
    """Outcome of the adopt-if-empty merge performed at login."""

    remote_found: bool = False
    customers_adopted: bool = False
    transactions_adopted: bool = False
    error: Optional[str] = None


class RefreshResult(BaseModel):
    """Outcome of a forced overwrite of local data from the cloud."""

    success: bool
    failure: Optional[RefreshFailure] = None
    error: Optional[str] = None
    customers_count: int = 0
    transactions_count: int = 0


class SyncState(BaseModel):
    """Point-in-time view of the sync engine for status displays."""

    is_online: bool
    sync_pending: bool
    sync_in_progress: bool
    last_synced_at: Optional[datetime] = None
    last_error: Optional[str] = None
