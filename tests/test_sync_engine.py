"""
Tests for the sync engine.

The remote store is a FakeRemote and connectivity is reported by hand, so
every network call the engine makes is visible in ``remote.reads`` and
``remote.writes``.
"""

import asyncio

import pytest

from cashbook.models import RefreshFailure, SyncEventType, SyncOutcome
from cashbook.services.remote import RemoteAuthError, RemoteUnavailableError
from cashbook.sync import ConnectivityMonitor, SyncEngine, snapshot_fingerprint

USER = "user-1"

REMOTE_CUSTOMERS = [
    {"id": "101", "name": "X", "balance": 5.0},
    {"id": "102", "name": "Y", "balance": 0.0},
    {"id": "103", "name": "Z", "balance": -2.5},
]
REMOTE_TRANSACTIONS = [
    {"id": "201", "amount": 5.0, "type": "income", "customerId": "101"},
    {"id": "202", "amount": 2.5, "type": "debit", "customerId": "103"},
]


async def sign_in(identity, user_id=USER):
    await identity.set_identity(user_id, id_token="token")


class TestPush:
    """Tests for pushAll."""

    async def test_push_writes_full_snapshot(self, engine, identity, store, remote):
        """Test the pushed document carries both collections and metadata."""
        await sign_in(identity)
        ana = await store.add_customer({"name": "Ana"})
        await store.add_transaction({"amount": 50, "type": "income", "customerId": ana.id})

        result = await engine.push_all(force=True)

        assert result.outcome == SyncOutcome.SYNCED
        assert result.success
        user_id, payload, merge = remote.writes[-1]
        assert user_id == USER
        assert merge is True
        assert [c["name"] for c in payload["customers"]] == ["Ana"]
        assert payload["customers"][0]["balance"] == 50.0
        assert len(payload["transactions"]) == 1
        assert payload["deviceInfo"]["platform"] == "android"
        assert payload["lastSyncedAt"].endswith("Z")

    async def test_push_preserves_other_remote_fields(self, engine, identity, remote):
        """Test the merge-write leaves fields this client doesn't write."""
        remote.documents[USER] = {"profile": {"plan": "pro"}}
        await sign_in(identity)

        await engine.push_all()

        assert remote.documents[USER]["profile"] == {"plan": "pro"}
        assert remote.documents[USER]["customers"] == []

    async def test_repeated_push_writes_once(self, engine, identity, store, remote):
        """Test pushing unchanged data again is a no-op."""
        await sign_in(identity)
        await store.add_customer({"name": "Ana"})
        await engine.join()
        assert len(remote.writes) == 1

        first = await engine.push_all()
        second = await engine.push_all()

        assert first.outcome == SyncOutcome.UP_TO_DATE
        assert second.outcome == SyncOutcome.UP_TO_DATE
        assert len(remote.writes) == 1

    async def test_concurrent_push_is_coalesced(self, engine, identity, store, remote):
        """Test a push requested mid-flight becomes one follow-up, not a second write."""
        await sign_in(identity)
        await store.add_customer({"name": "Ana"})
        await engine.join()
        remote.writes.clear()
        remote.write_delay = 0.05

        running = asyncio.create_task(engine.push_all(force=True))
        await asyncio.sleep(0)
        assert engine.sync_in_progress

        queued = await engine.push_all()
        assert queued.outcome == SyncOutcome.IN_PROGRESS
        assert queued.pending

        assert (await running).outcome == SyncOutcome.SYNCED
        await engine.join()

        assert len(remote.writes) == 1
        assert not engine.sync_pending
        assert not engine.sync_in_progress

    async def test_change_during_push_gets_follow_up(self, engine, identity, store, remote):
        """Test data changed mid-flight is pushed by the follow-up run."""
        await sign_in(identity)
        remote.write_delay = 0.05

        running = asyncio.create_task(engine.push_all())
        await asyncio.sleep(0)
        await engine.push_all()
        await store.add_customer({"name": "Late"})

        await running
        await engine.join()

        assert len(remote.writes) == 2
        assert [c["name"] for c in remote.documents[USER]["customers"]] == ["Late"]

    async def test_failure_marks_pending(self, engine, identity, store, remote, audit):
        """Test a failed push is reported, not raised, and retried later."""
        await sign_in(identity)
        await store.add_customer({"name": "Ana"})
        remote.fail_with = RemoteUnavailableError("HTTP 503")

        result = await engine.push_all()

        assert result.outcome == SyncOutcome.FAILED
        assert result.pending
        assert "503" in result.error
        assert engine.sync_pending
        assert engine.status().last_error == "HTTP 503"
        assert audit.last_event(USER).event_type == SyncEventType.PUSH_FAILED

        remote.fail_with = None
        retry = await engine.push_all()
        assert retry.outcome == SyncOutcome.SYNCED
        assert not engine.sync_pending
        assert engine.status().last_error is None

    async def test_auth_error_is_an_ordinary_failure(self, engine, identity, remote):
        """Test token problems are surfaced as a pending failure."""
        await sign_in(identity)
        remote.fail_with = RemoteAuthError("token expired")

        result = await engine.push_all()

        assert result.outcome == SyncOutcome.FAILED
        assert result.pending


class TestDebounce:
    """Tests for write-triggered pushes."""

    async def test_burst_of_writes_pushes_once(self, engine, identity, store, remote):
        """Test rapid edits collapse into one push."""
        await sign_in(identity)
        for name in ("A", "B", "C"):
            await store.add_customer({"name": name})
        assert remote.writes == []

        await engine.join()

        assert len(remote.writes) == 1
        assert len(remote.writes[0][1]["customers"]) == 3

    async def test_writes_for_another_identity_are_ignored(self, engine, identity, store, remote):
        """Test a change event for a different user schedules nothing."""
        await sign_in(identity)
        await store.replace_collections(customers=[{"name": "Q"}], notify=True, user_id="other")
        await engine.join()
        assert remote.writes == []


class TestGuestIsolation:
    """Tests that guest data never reaches the network."""

    async def test_guest_never_touches_remote(self, engine, store, remote):
        """Test no read or write is attempted for the guest."""
        await store.add_customer({"name": "Local only"})
        await engine.join()

        push = await engine.push_all()
        pull = await engine.pull_all()
        refresh = await engine.force_refresh()

        assert push.outcome == SyncOutcome.NOT_APPLICABLE
        assert pull is None
        assert refresh.failure == RefreshFailure.NOT_AUTHENTICATED
        assert remote.reads == []
        assert remote.writes == []


class TestOfflineQueuing:
    """Tests for deferring pushes while offline."""

    async def test_offline_push_is_deferred(self, engine, identity, store, remote, connectivity):
        """Test offline push returns pending and makes no call."""
        await sign_in(identity)
        await connectivity.report(False)

        result = await engine.push_all()

        assert result.outcome == SyncOutcome.OFFLINE
        assert result.pending
        assert engine.sync_pending
        assert remote.writes == []

    async def test_reconnect_pushes_exactly_once(self, engine, identity, store, remote, connectivity):
        """Test a deferred push runs once connectivity returns."""
        await sign_in(identity)
        await connectivity.report(False)
        await store.add_customer({"name": "Ana"})
        await store.add_customer({"name": "Bea"})
        await engine.join()
        assert remote.writes == []
        assert engine.sync_pending

        await connectivity.report(True)
        await engine.join()

        assert len(remote.writes) == 1
        assert len(remote.documents[USER]["customers"]) == 2
        assert not engine.sync_pending

    async def test_reconnect_without_pending_does_nothing(self, engine, identity, remote, connectivity):
        """Test reconnecting with nothing owed makes no call."""
        await sign_in(identity)
        await connectivity.report(False)
        await connectivity.report(True)
        await engine.join()
        assert remote.writes == []

    async def test_probe_decides_connectivity(self, store, identity, remote, sync_settings):
        """Test an active probe is consulted before pushing."""
        async def unreachable():
            return False

        monitor = ConnectivityMonitor(probe=unreachable)
        sync_engine = SyncEngine(
            store, identity, remote, monitor, settings=sync_settings, platform="web"
        )
        try:
            await sign_in(identity)
            result = await sync_engine.push_all()
            assert result.outcome == SyncOutcome.OFFLINE
            assert not monitor.is_online
        finally:
            await sync_engine.close()


class TestPull:
    """Tests for pullAll."""

    async def test_missing_document_is_absent(self, engine, identity, remote):
        """Test a first-time user has no snapshot and no error."""
        await sign_in(identity)
        assert await engine.pull_all() is None
        assert USER in remote.reads

    async def test_pull_returns_collections(self, engine, identity, remote):
        """Test the remote collections are returned."""
        remote.documents[USER] = {
            "customers": REMOTE_CUSTOMERS,
            "transactions": REMOTE_TRANSACTIONS,
            "lastSyncedAt": "2024-05-01T08:30:00.000Z",
        }
        await sign_in(identity)

        snapshot = await engine.pull_all()

        assert [c["name"] for c in snapshot.customers] == ["X", "Y", "Z"]
        assert len(snapshot.transactions) == 2
        assert snapshot.last_synced_at == "2024-05-01T08:30:00.000Z"

    async def test_pull_offline_is_absent(self, engine, identity, remote, connectivity):
        """Test nothing is read while offline."""
        await sign_in(identity)
        remote.reads.clear()
        await connectivity.report(False)
        assert await engine.pull_all() is None
        assert remote.reads == []

    async def test_pull_error_is_absent(self, engine, identity, remote, audit):
        """Test a failing read is logged, not raised."""
        await sign_in(identity)
        remote.fail_with = RemoteUnavailableError("down")
        assert await engine.pull_all() is None
        assert audit.last_event(USER).event_type == SyncEventType.PULL_FAILED


class TestMergeOnLogin:
    """Tests for the adopt-if-empty login merge."""

    async def test_empty_device_adopts_remote(self, engine, identity, store, remote):
        """Test local [] plus remote [X, Y, Z] gives [X, Y, Z]."""
        remote.documents[USER] = {
            "customers": REMOTE_CUSTOMERS,
            "transactions": REMOTE_TRANSACTIONS,
        }

        await sign_in(identity)

        assert [c.name for c in await store.list_customers()] == ["X", "Y", "Z"]
        assert len(await store.list_transactions()) == 2

        # Adopted data is not pushed straight back
        await engine.join()
        assert remote.writes == []
        assert (await engine.push_all()).outcome == SyncOutcome.UP_TO_DATE

    async def test_non_empty_device_keeps_local(self, engine, identity, store, remote, kv, seed):
        """Test local [A, B] plus remote [X, Y, Z] stays [A, B]."""
        await seed(kv, USER, "customers", [
            {"id": "1", "name": "A"},
            {"id": "2", "name": "B"},
        ])
        remote.documents[USER] = {"customers": REMOTE_CUSTOMERS}

        await sign_in(identity)

        assert [c.name for c in await store.list_customers()] == ["A", "B"]

    async def test_collections_merge_independently(self, engine, identity, store, remote, kv, seed):
        """Test an empty collection is adopted even if the other has data."""
        await seed(kv, USER, "customers", [{"id": "1", "name": "A"}])
        remote.documents[USER] = {
            "customers": REMOTE_CUSTOMERS,
            "transactions": REMOTE_TRANSACTIONS,
        }
        await sign_in(identity)
        assert [c.name for c in await store.list_customers()] == ["A"]
        assert len(await store.list_transactions()) == 2

        # Both collections hold data now
        again = await engine.merge_on_login()
        assert again.remote_found
        assert not again.customers_adopted
        assert not again.transactions_adopted

    async def test_merge_is_recorded(self, engine, identity, remote, audit):
        """Test the merge records what it adopted."""
        remote.documents["user-2"] = {"customers": REMOTE_CUSTOMERS}
        await sign_in(identity, "user-2")

        event = audit.last_event("user-2")
        assert event.event_type == SyncEventType.MERGE_COMPLETED
        assert event.details == {"customers_adopted": True, "transactions_adopted": False}

    async def test_no_remote_document(self, engine, identity):
        """Test first login with nothing in the cloud."""
        await sign_in(identity)
        result = await engine.merge_on_login()
        assert not result.remote_found
        assert result.error is None

    async def test_switching_users_merges_again(self, engine, identity, store, remote):
        """Test a direct switch from one user to another triggers a merge."""
        remote.documents["user-2"] = {"customers": REMOTE_CUSTOMERS}
        await sign_in(identity, USER)
        await sign_in(identity, "user-2")
        assert len(await store.list_customers()) == 3

    @pytest.mark.parametrize("yields_before_write", range(10))
    async def test_local_write_during_merge_is_kept(
        self, engine, identity, store, remote, kv, yields_before_write
    ):
        """Test a customer added while the merge runs is never overwritten."""
        await sign_in(identity)
        remote.documents[USER] = {"customers": REMOTE_CUSTOMERS}
        kv.read_yields = 1

        async def add_local():
            for _ in range(yields_before_write):
                await asyncio.sleep(0)
            return await store.add_customer({"name": "Local"})

        merge, local = await asyncio.gather(engine.merge_on_login(), add_local())

        assert local is not None
        names = [c.name for c in await store.list_customers()]
        if merge.customers_adopted:
            assert names == ["X", "Y", "Z", "Local"]
        else:
            assert names == ["Local"]

    async def test_merge_write_failure_reported(self, engine, identity, remote, kv):
        await sign_in(identity)
        remote.documents[USER] = {"customers": REMOTE_CUSTOMERS}
        kv.fail_all_writes = True

        result = await engine.merge_on_login()

        assert result.remote_found
        assert result.error == "Failed to save cloud data locally"
        assert not result.customers_adopted

    async def test_sign_out_does_not_merge(self, engine, identity, remote):
        """Test moving to the guest reads nothing."""
        await sign_in(identity)
        remote.reads.clear()
        await identity.set_identity(None)
        assert remote.reads == []


class TestForceRefresh:
    """Tests for the unconditional refresh from the cloud."""

    async def test_refresh_overwrites_local(self, engine, identity, store, remote):
        """Test local data is replaced even when not empty."""
        await sign_in(identity)
        await store.add_customer({"name": "Local"})
        await engine.join()
        remote.documents[USER] = {
            "customers": REMOTE_CUSTOMERS,
            "transactions": REMOTE_TRANSACTIONS,
        }

        result = await engine.force_refresh()

        assert result.success
        assert result.customers_count == 3
        assert result.transactions_count == 2
        assert [c.name for c in await store.list_customers()] == ["X", "Y", "Z"]
        assert (await engine.push_all()).outcome == SyncOutcome.UP_TO_DATE

    async def test_refresh_offline(self, engine, identity, connectivity):
        await sign_in(identity)
        await connectivity.report(False)
        result = await engine.force_refresh()
        assert not result.success
        assert result.failure == RefreshFailure.OFFLINE

    async def test_refresh_without_remote_data(self, engine, identity):
        await sign_in(identity)
        result = await engine.force_refresh()
        assert result.failure == RefreshFailure.NO_REMOTE_DATA

    async def test_refresh_remote_error(self, engine, identity, remote):
        await sign_in(identity)
        remote.fail_with = RemoteUnavailableError("down")
        result = await engine.force_refresh()
        assert result.failure == RefreshFailure.REMOTE_ERROR
        assert result.error == "down"

    async def test_refresh_local_write_failure(self, engine, identity, remote, kv, audit):
        """Test a failed local save is reported as such."""
        remote.documents[USER] = {"customers": REMOTE_CUSTOMERS}
        kv.fail_all_writes = True
        await sign_in(identity)

        result = await engine.force_refresh()

        assert result.failure == RefreshFailure.LOCAL_WRITE_FAILED
        assert audit.last_event(USER).event_type == SyncEventType.REFRESH_FAILED


class TestEngineState:
    """Tests for status reporting and identity transitions."""

    async def test_status_after_sync(self, engine, identity):
        await sign_in(identity)
        await engine.push_all()
        state = engine.status()
        assert state.is_online
        assert not state.sync_pending
        assert state.last_synced_at is not None

    async def test_sign_out_cancels_scheduled_push(self, engine, identity, store, remote):
        """Test work scheduled for a user is dropped when they sign out."""
        await sign_in(identity)
        await store.add_customer({"name": "Ana"})
        await identity.set_identity(None)
        await engine.join()
        assert remote.writes == []
        assert not engine.sync_pending

    def test_fingerprint_ignores_key_order(self):
        a = snapshot_fingerprint([{"id": "1", "name": "A"}], [])
        assert a == snapshot_fingerprint([{"name": "A", "id": "1"}], [])
        assert a != snapshot_fingerprint([], [{"id": "1", "name": "A"}])
