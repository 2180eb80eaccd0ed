"""
Sync Engine

Keeps the cloud copy of an authenticated user's data eventually consistent
with the device.

Flow:
1. A local write notifies the engine
2. The engine waits for a quiet period (debounce) so a burst of edits costs
   one round trip
3. It pushes the full snapshot with a merge-write
4. If offline or failing, it marks the push pending and retries when
   connectivity returns or on the next write

On login the engine pulls the cloud document and adopts each collection that
is still empty on the device ("adopt if empty").

KNOWN LIMITATION: there is no cross-device locking. Two devices pushing at
the same time both succeed and the later write wins for the whole document.
"""

import asyncio
import hashlib
import json
from datetime import datetime
from typing import Any, Callable, Optional

import structlog

from cashbook.audit import SyncAuditLog
from cashbook.config import SyncSettings, get_settings
from cashbook.identity import Identity, IdentityContext
from cashbook.models.audit import SyncEventBuilder
from cashbook.models.records import utcnow
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
from cashbook.services.remote import RemoteDocumentStore, RemoteError
from cashbook.services.storage import ChangeEvent, LocalRecordStore, StorageError
from cashbook.sync.connectivity import ConnectivityMonitor

logger = structlog.get_logger(__name__)


def snapshot_fingerprint(customers: list[dict], transactions: list[dict]) -> str:
    """Content hash of both collections, used to skip redundant pushes."""
    encoded = json.dumps(
        {"customers": customers, "transactions": transactions},
        sort_keys=True,
        separators=(",", ":"),
    )
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


class SyncEngine:
    """
    Pushes local changes to the remote document store and pulls them back.

    Only one push runs at a time in this process. Requests arriving while a
    push is running are coalesced into a single follow-up push.
    """

    def __init__(
        self,
        store: LocalRecordStore,
        identity: IdentityContext,
        remote: RemoteDocumentStore,
        connectivity: ConnectivityMonitor,
        settings: Optional[SyncSettings] = None,
        platform: Optional[str] = None,
        audit: Optional[SyncAuditLog] = None,
    ):
        self._store = store
        self._identity = identity
        self._remote = remote
        self._connectivity = connectivity
        self._settings = settings or get_settings().sync
        self._platform = platform or get_settings().app.platform
        self._audit = audit or SyncAuditLog()

        self.sync_pending = False
        self.sync_in_progress = False
        self._last_synced_at: Optional[datetime] = None
        self._last_error: Optional[str] = None
        # user_id -> fingerprint of the last snapshot known to be in the cloud
        self._last_pushed: dict[str, str] = {}

        self._timer: Optional[asyncio.Task] = None
        self._tasks: set[asyncio.Task] = set()
        self._unsubscribers: list[Callable[[], None]] = [
            store.changes.subscribe(self._on_local_change),
            connectivity.subscribe(self._on_connectivity_change),
            identity.subscribe(self._on_identity_change),
        ]

    @property
    def is_online(self) -> bool:
        return self._connectivity.is_online

    @property
    def audit(self) -> SyncAuditLog:
        return self._audit

    @property
    def remote(self) -> RemoteDocumentStore:
        return self._remote

    def status(self) -> SyncState:
        return SyncState(
            is_online=self.is_online,
            sync_pending=self.sync_pending,
            sync_in_progress=self.sync_in_progress,
            last_synced_at=self._last_synced_at,
            last_error=self._last_error,
        )

    # -------------------------------------------------------------------------
    # Scheduling
    # -------------------------------------------------------------------------

    def _spawn(self, coro: Any) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def schedule_push(self, delay: Optional[float] = None) -> None:
        """
        Push after ``delay`` seconds (default: the debounce period).

        A push scheduled earlier but not yet started is replaced, so a burst
        of requests results in one push.
        """
        if delay is None:
            delay = self._settings.debounce_seconds
        self._cancel_timer()
        self._timer = self._spawn(self._delayed_push(delay))

    async def _delayed_push(self, delay: float) -> None:
        await asyncio.sleep(delay)
        # From here on the push must not be cancelled by a reschedule
        self._timer = None
        await self.push_all()

    def _cancel_timer(self) -> None:
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = None

    async def join(self) -> None:
        """Wait until no scheduled or running push remains."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        """Stop listening and cancel scheduled work."""
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []
        self._cancel_timer()
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # -------------------------------------------------------------------------
    # Collaborator events
    # -------------------------------------------------------------------------

    def _on_local_change(self, event: ChangeEvent) -> None:
        current = self._identity.current
        if current.is_guest or event.identity != current.user_id:
            return
        self.schedule_push()

    async def _on_connectivity_change(self, online: bool) -> None:
        if online and self.sync_pending:
            logger.info("back_online_syncing", identity=self._identity.user_id)
            self.schedule_push(0)

    async def _on_identity_change(self, previous: Identity, current: Identity) -> None:
        # Anything scheduled belonged to the previous user
        self._cancel_timer()
        self.sync_pending = False
        self._last_error = None
        if not current.is_guest:
            await self.merge_on_login()

    # -------------------------------------------------------------------------
    # Push
    # -------------------------------------------------------------------------

    async def push_all(self, force: bool = False) -> SyncResult:
        """
        Push the full local snapshot for the current user.

        Never raises for expected conditions; see SyncOutcome.
        With force=True the push happens even if nothing changed.
        """
        if not await self._connectivity.check():
            self.sync_pending = True
            self._audit.log(
                SyncEventBuilder.push_deferred(self._identity.user_id, "offline")
            )
            return SyncResult(outcome=SyncOutcome.OFFLINE, pending=True, error="Offline")

        identity = self._identity.current
        if identity.is_guest:
            return SyncResult(
                outcome=SyncOutcome.NOT_APPLICABLE,
                error="No authenticated user",
            )

        if self.sync_in_progress:
            self.sync_pending = True
            return SyncResult(
                outcome=SyncOutcome.IN_PROGRESS,
                pending=True,
                error="Sync already in progress",
            )

        self.sync_in_progress = True
        self.sync_pending = False
        try:
            result = await self._push_snapshot(identity, force)
        except (RemoteError, StorageError) as e:
            self.sync_pending = True
            self._last_error = str(e)
            self._audit.log(SyncEventBuilder.push_failed(identity.user_id, str(e)))
            return SyncResult(outcome=SyncOutcome.FAILED, pending=True, error=str(e))
        finally:
            self.sync_in_progress = False

        self._last_error = None
        if self.sync_pending:
            self.schedule_push(self._settings.follow_up_delay_seconds)
        return result

    async def _push_snapshot(self, identity: Identity, force: bool) -> SyncResult:
        customers, transactions = await self._store.read_collections(identity.user_id)
        fingerprint = snapshot_fingerprint(customers, transactions)

        if not force and self._last_pushed.get(identity.user_id) == fingerprint:
            self._audit.log(SyncEventBuilder.push_skipped(identity.user_id))
            return SyncResult(
                outcome=SyncOutcome.UP_TO_DATE,
                synced_at=self._last_synced_at,
            )

        now = utcnow()
        snapshot = SyncSnapshot(
            customers=customers,
            transactions=transactions,
            last_synced_at=now,
            device_info=DeviceInfo(platform=self._platform, sync_time=now),
        )
        await self._remote.write_document(
            identity.user_id, snapshot.to_document(), merge=True
        )

        self._last_pushed[identity.user_id] = fingerprint
        self._last_synced_at = now
        self._audit.log(SyncEventBuilder.push_succeeded(
            identity.user_id, len(customers), len(transactions)
        ))
        return SyncResult(outcome=SyncOutcome.SYNCED, synced_at=now)

    # -------------------------------------------------------------------------
    # Pull, merge, refresh
    # -------------------------------------------------------------------------

    async def _fetch_snapshot(self, identity: Identity) -> Optional[RemoteSnapshot]:
        document = await self._remote.read_document(identity.user_id)
        if document is None:
            return None
        return RemoteSnapshot.from_document(document)

    async def pull_all(self) -> Optional[RemoteSnapshot]:
        """
        Read the user's cloud snapshot.

        Returns None when offline, signed out, when no document exists yet,
        or when the read fails (logged).
        """
        if not await self._connectivity.check():
            return None
        identity = self._identity.current
        if identity.is_guest:
            return None

        try:
            snapshot = await self._fetch_snapshot(identity)
        except RemoteError as e:
            self._audit.log(SyncEventBuilder.pull_failed(identity.user_id, str(e)))
            return None

        self._audit.log(SyncEventBuilder.pull_completed(identity.user_id, snapshot is not None))
        return snapshot

    async def merge_on_login(self) -> MergeResult:
        """
        Adopt cloud data for each collection that is empty on this device.

        Collections that already hold local data are left untouched; there
        is no record-level merge. Adopted data is written without a change
        notification so it isn't immediately pushed back.
        """
        identity = self._identity.current
        snapshot = await self.pull_all()
        if snapshot is None:
            return MergeResult(remote_found=False)

        adoption = await self._store.adopt_if_empty(
            customers=snapshot.customers,
            transactions=snapshot.transactions,
            user_id=identity.user_id,
        )
        if adoption is None:
            return MergeResult(remote_found=True, error="Failed to save cloud data locally")

        if adoption.customers_adopted and adoption.transactions_adopted:
            # Device now mirrors the cloud
            self._last_pushed[identity.user_id] = snapshot_fingerprint(
                adoption.customers, adoption.transactions
            )

        self._audit.log(SyncEventBuilder.merge_completed(
            identity.user_id, adoption.customers_adopted, adoption.transactions_adopted
        ))
        return MergeResult(
            remote_found=True,
            customers_adopted=adoption.customers_adopted,
            transactions_adopted=adoption.transactions_adopted,
        )

    async def force_refresh(self) -> RefreshResult:
        """Overwrite both local collections with the cloud copy, unconditionally."""
        logger.info("force_refresh_requested", identity=self._identity.user_id)

        if not await self._connectivity.check():
            return self._refresh_failed(RefreshFailure.OFFLINE, "No internet connection")

        identity = self._identity.current
        if identity.is_guest:
            return self._refresh_failed(RefreshFailure.NOT_AUTHENTICATED, "Not logged in")

        try:
            snapshot = await self._fetch_snapshot(identity)
        except RemoteError as e:
            return self._refresh_failed(RefreshFailure.REMOTE_ERROR, str(e))

        if snapshot is None:
            return self._refresh_failed(
                RefreshFailure.NO_REMOTE_DATA, "No data found in the cloud"
            )

        ok = await self._store.replace_collections(
            customers=snapshot.customers,
            transactions=snapshot.transactions,
            user_id=identity.user_id,
        )
        if not ok:
            return self._refresh_failed(
                RefreshFailure.LOCAL_WRITE_FAILED, "Failed to save cloud data locally"
            )

        customers, transactions = await self._store.read_collections(identity.user_id)
        self._last_pushed[identity.user_id] = snapshot_fingerprint(customers, transactions)
        self._audit.log(SyncEventBuilder.refresh_completed(
            identity.user_id, len(snapshot.customers), len(snapshot.transactions)
        ))
        return RefreshResult(
            success=True,
            customers_count=len(snapshot.customers),
            transactions_count=len(snapshot.transactions),
        )

    def _refresh_failed(self, failure: RefreshFailure, error: str) -> RefreshResult:
        self._audit.log(SyncEventBuilder.refresh_failed(
            self._identity.user_id, failure.value, error
        ))
        return RefreshResult(success=False, failure=failure, error=error)
