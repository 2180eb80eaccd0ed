"""
Main Orchestrator for Cashbook

Wires the data layer together for the UI:
1. Identity context (guest until the auth layer signs someone in)
2. Local record store on the configured key-value backend
3. Remote document store for the runtime platform
4. Connectivity monitor and sync engine

DESIGN DECISION: The app must work without the cloud. If the remote store
can't be configured, the components are still created and the app runs
local-only (``engine`` is None).
"""

from typing import NamedTuple, Optional

import structlog
from pydantic import ValidationError

from cashbook.audit import SyncAuditLog, configure_logging
from cashbook.config import Settings, get_settings
from cashbook.identity import IdentityContext
from cashbook.services.remote import RemoteDocumentStore, select_remote_store
from cashbook.services.storage import (
    InMemoryKeyValueStore,
    KeyValueStore,
    LocalRecordStore,
    SQLiteKeyValueStore,
)
from cashbook.sync import ConnectivityMonitor, HttpConnectivityProbe, SyncEngine

logger = structlog.get_logger(__name__)


class AppComponents(NamedTuple):
    identity: IdentityContext
    store: LocalRecordStore
    engine: Optional[SyncEngine]
    connectivity: ConnectivityMonitor
    audit: SyncAuditLog

    async def close(self) -> None:
        """Release background tasks and connections."""
        if self.engine is not None:
            await self.engine.close()
            await self.engine.remote.close()
        self.store.close()
        await self.store.kv.close()


def _create_kv(settings: Settings) -> KeyValueStore:
    storage = settings.storage
    if storage.backend == "memory":
        return InMemoryKeyValueStore()
    return SQLiteKeyValueStore(storage.sqlite_path)


def _create_connectivity(settings: Settings) -> ConnectivityMonitor:
    sync = settings.sync
    probe = None
    if sync.connectivity_probe_url:
        probe = HttpConnectivityProbe(
            sync.connectivity_probe_url,
            timeout=sync.connectivity_timeout_seconds,
        )
    return ConnectivityMonitor(probe=probe)


async def create_app_components(
    settings: Optional[Settings] = None,
    kv: Optional[KeyValueStore] = None,
    remote: Optional[RemoteDocumentStore] = None,
    connectivity: Optional[ConnectivityMonitor] = None,
) -> AppComponents:
    """
    Factory function to create all application components.

    Args:
        settings: Settings to use (defaults to the cached environment settings)
        kv: Key-value backend; built from storage settings when omitted
        remote: Remote document store; selected by platform when omitted
        connectivity: Connectivity monitor; built from sync settings when omitted

    Returns:
        AppComponents with ``engine`` set to None when running local-only
    """
    settings = settings or get_settings()
    app = settings.app
    configure_logging(debug=app.debug_mode)

    audit = SyncAuditLog()
    identity = IdentityContext(guest_id=settings.storage.guest_id)
    store = LocalRecordStore(kv or _create_kv(settings), identity, audit=audit)

    # Finish any write the previous session didn't complete
    await store.recover()

    connectivity = connectivity or _create_connectivity(settings)

    engine = None
    if remote is None:
        try:
            remote = select_remote_store(identity, settings)
        except ValidationError as e:
            # Cloud not configured - continue without it
            logger.warning("remote_not_configured", error=str(e))
            remote = None

    if remote is not None:
        engine = SyncEngine(
            store,
            identity,
            remote,
            connectivity,
            settings=settings.sync,
            platform=app.platform,
            audit=audit,
        )

    logger.info(
        "app_components_created",
        environment=app.app_environment,
        storage_backend=settings.storage.backend,
        remote=remote.name if remote is not None else None,
    )
    return AppComponents(identity, store, engine, connectivity, audit)
