"""
Shared fixtures.

No test talks to a real network or cloud project: the remote document store
is replaced by FakeRemote and connectivity is driven by hand.
"""

import asyncio
import copy
import json
from typing import Any, Mapping, Optional

import pytest

from cashbook.audit import SyncAuditLog
from cashbook.config import SyncSettings
from cashbook.identity import IdentityContext
from cashbook.services.remote import RemoteDocumentStore
from cashbook.services.storage import (
    InMemoryKeyValueStore,
    LocalRecordStore,
    StorageError,
)
from cashbook.sync import ConnectivityMonitor, SyncEngine


class FakeRemote(RemoteDocumentStore):
    """Dict-backed remote with merge-write semantics and failure injection."""

    name = "fake"

    def __init__(self, documents: Optional[dict[str, dict]] = None):
        self.documents: dict[str, dict] = copy.deepcopy(documents or {})
        self.reads: list[str] = []
        self.writes: list[tuple[str, dict, bool]] = []
        self.fail_with: Optional[Exception] = None
        self.write_delay = 0.0

    async def read_document(self, user_id: str) -> Optional[dict[str, Any]]:
        self.reads.append(user_id)
        if self.fail_with is not None:
            raise self.fail_with
        document = self.documents.get(user_id)
        return copy.deepcopy(document) if document is not None else None

    async def write_document(
        self,
        user_id: str,
        payload: Mapping[str, Any],
        merge: bool = True,
    ) -> None:
        self.writes.append((user_id, copy.deepcopy(dict(payload)), merge))
        if self.write_delay:
            await asyncio.sleep(self.write_delay)
        if self.fail_with is not None:
            raise self.fail_with
        existing = self.documents.get(user_id, {}) if merge else {}
        self.documents[user_id] = {**existing, **copy.deepcopy(dict(payload))}


class FlakyKeyValueStore(InMemoryKeyValueStore):
    """
    In-memory store that can be told to fail reads or writes of given keys,
    or to yield to the event loop on every read.
    """

    def __init__(self, initial: Optional[dict[str, str]] = None):
        super().__init__(initial)
        self.fail_reads = False
        self.fail_write_keys: set[str] = set()
        self.fail_all_writes = False
        self.read_yields = 0

    async def get(self, key: str) -> Optional[str]:
        # Hand control back to the loop like a real backend would
        for _ in range(self.read_yields):
            await asyncio.sleep(0)
        if self.fail_reads:
            raise StorageError(f"read failed: {key}")
        return await super().get(key)

    async def set(self, key: str, value: str) -> None:
        if self.fail_all_writes or key in self.fail_write_keys:
            raise StorageError(f"write failed: {key}")
        await super().set(key, value)


async def _seed(kv: InMemoryKeyValueStore, user_id: str, collection: str, records: list) -> None:
    await kv.set(f"{user_id}_{collection}", json.dumps(records))


@pytest.fixture
def seed():
    """Write a raw collection straight into a backend."""
    return _seed


@pytest.fixture
def sync_settings() -> SyncSettings:
    return SyncSettings(debounce_seconds=0.01, follow_up_delay_seconds=0.0)


@pytest.fixture
def identity() -> IdentityContext:
    return IdentityContext()


@pytest.fixture
def kv() -> FlakyKeyValueStore:
    return FlakyKeyValueStore()


@pytest.fixture
def audit() -> SyncAuditLog:
    return SyncAuditLog()


@pytest.fixture
def store(kv, identity, audit) -> LocalRecordStore:
    record_store = LocalRecordStore(kv, identity, audit=audit)
    yield record_store
    record_store.close()


@pytest.fixture
def remote() -> FakeRemote:
    return FakeRemote()


@pytest.fixture
def connectivity() -> ConnectivityMonitor:
    return ConnectivityMonitor()


@pytest.fixture
async def engine(store, identity, remote, connectivity, sync_settings, audit):
    sync_engine = SyncEngine(
        store,
        identity,
        remote,
        connectivity,
        settings=sync_settings,
        platform="android",
        audit=audit,
    )
    yield sync_engine
    await sync_engine.close()
