"""
Local Record Store

Identity-namespaced persistence of customers and transactions on top of a
KeyValueStore, with customer balances kept in step with their transactions.

DESIGN DECISION: Each collection is stored whole, as one JSON array under
``<identity>_customers`` / ``<identity>_transactions``. Collections are
small (one person's bookkeeping) and a whole-array write keeps every
operation a read-modify-write of at most two keys.

GUARANTEES:
- A linked transaction changes its customer's balance exactly once on
  create, is reversed and re-applied exactly once on edit, and reversed
  exactly once on delete
- Writes touching both collections go through a journal entry. Once it
  is stored the write is committed: reads are served from it and it is
  applied before the next write or on recover(), so balances never read
  out of step
- Writes for one identity are serialized
- Reads never raise: a broken collection reads as empty and is logged
"""

import asyncio
import json
from datetime import date, datetime, tzinfo
from decimal import Decimal
from enum import Enum
from typing import (
    Any,
    Iterable,
    Mapping,
    NamedTuple,
    Optional,
    Sequence,
    Type,
    TypeVar,
    Union,
)

import structlog
from pydantic import ValidationError
from pydantic.alias_generators import to_camel

from cashbook.audit import SyncAuditLog
from cashbook.identity import Identity, IdentityContext
from cashbook.models.audit import SyncEventBuilder
from cashbook.models.records import (
    Customer,
    Stats,
    Transaction,
    TransactionType,
    utcnow,
)
from cashbook.services.storage.events import ChangeEvent, ChangeNotifier
from cashbook.services.storage.interface import (
    KeyValueStore,
    RecordValidationError,
    StorageError,
)

logger = structlog.get_logger(__name__)

CUSTOMERS = "customers"
TRANSACTIONS = "transactions"
JOURNAL = "journal"

# Assigned by the store, never taken from caller input
_MANAGED_FIELDS = frozenset({"id", "createdAt", "updatedAt"})

RecordT = TypeVar("RecordT", Customer, Transaction)


class SettingKey(str, Enum):
    """Device-wide settings, shared by every identity on the device."""
    PASSCODE = "app_passcode"
    AUTH_METHOD = "auth_method"
    THEME = "app_theme"
    LANGUAGE = "app_language"
    CURRENCY = "app_currency"


SETTING_DEFAULTS: dict[SettingKey, str] = {
    SettingKey.AUTH_METHOD: "none",
    SettingKey.THEME: "dark",
    SettingKey.LANGUAGE: "en",
    SettingKey.CURRENCY: "USD",
}


class Adoption(NamedTuple):
    """Result of adopt_if_empty(): flags plus both collections as stored."""
    customers_adopted: bool
    transactions_adopted: bool
    customers: list[dict]
    transactions: list[dict]


def _normalize_fields(
    fields: Mapping[str, Any],
    extra_managed: Iterable[str] = (),
) -> dict[str, Any]:
    """Map caller field names to storage keys and drop store-managed ones."""
    managed = _MANAGED_FIELDS | set(extra_managed)
    normalized = {}
    for key, value in fields.items():
        storage_key = to_camel(key) if "_" in key else key
        if storage_key not in managed:
            normalized[storage_key] = value
    return normalized


def _build(model: Type[RecordT], fields: Mapping[str, Any]) -> RecordT:
    try:
        return model.model_validate(dict(fields))
    except ValidationError as e:
        raise RecordValidationError(
            f"Invalid {model.__name__.lower()}: {e}"
        ) from e


def _find(records: Sequence[Union[Customer, Transaction]], record_id: str) -> Optional[int]:
    for index, record in enumerate(records):
        if record.id == record_id:
            return index
    return None


def _dump(records: Sequence[Union[Customer, Transaction]], rejects: Sequence[dict]) -> list[dict]:
    return [record.to_record() for record in records] + list(rejects)


def _canonicalize(raw_records: Sequence[Mapping[str, Any]], model: Type[RecordT]) -> list[dict]:
    """Rewrite records in canonical form, keeping unreadable ones untouched."""
    canonical = []
    for raw in raw_records:
        try:
            canonical.append(model.model_validate(dict(raw)).to_record())
        except ValidationError:
            canonical.append(dict(raw))
    return canonical


def _apply_balance_effect(
    customers: list[Customer],
    transaction: Transaction,
    direction: int,
    now: datetime,
) -> bool:
    """
    Add (direction=1) or reverse (direction=-1) a transaction's effect on
    its linked customer. Returns True if a customer was changed.
    """
    if not transaction.customer_id:
        return False
    index = _find(customers, transaction.customer_id)
    if index is None:
        return False
    customer = customers[index]
    customer.balance = customer.balance + transaction.signed_amount * direction
    customer.updated_at = now
    return True


def group_transactions_by_day(
    transactions: Iterable[Transaction],
    tz: Optional[tzinfo] = None,
) -> dict[date, list[Transaction]]:
    """Group transactions by calendar day, newest day and entry first."""
    groups: dict[date, list[Transaction]] = {}
    ordered = sorted(transactions, key=lambda t: t.created_at, reverse=True)
    for transaction in ordered:
        created = transaction.created_at
        if tz is not None:
            created = created.astimezone(tz)
        groups.setdefault(created.date(), []).append(transaction)
    return groups


class LocalRecordStore:
    """
    Customers, transactions and device settings for the current identity.

    Every persisted write notifies ``changes`` subscribers.
    """

    def __init__(
        self,
        kv: KeyValueStore,
        identity: IdentityContext,
        notifier: Optional[ChangeNotifier] = None,
        audit: Optional[SyncAuditLog] = None,
    ):
        self._kv = kv
        self._identity = identity
        self._audit = audit
        self.changes = notifier or ChangeNotifier()
        self._locks: dict[str, asyncio.Lock] = {}
        self._unsubscribe_identity = identity.subscribe(self._on_identity_changed)

    @property
    def identity(self) -> IdentityContext:
        return self._identity

    @property
    def kv(self) -> KeyValueStore:
        return self._kv

    def close(self) -> None:
        self._unsubscribe_identity()

    # -------------------------------------------------------------------------
    # Persistence helpers
    # -------------------------------------------------------------------------

    def _lock_for(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = self._locks[user_id] = asyncio.Lock()
        return lock

    def _key(self, user_id: str, name: str) -> str:
        return self._identity.namespaced(name, user_id)

    async def _read_journal(self, user_id: str) -> Optional[dict]:
        """
        The pending journal entry, if any. Raises StorageError if the
        journal can't be read.

        An unreadable entry comes back as {}: it is written before any
        collection, so nothing was applied from it.
        """
        raw = await self._kv.get(self._key(user_id, JOURNAL))
        if not raw:
            return None
        try:
            entry = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.error("journal_corrupt", identity=user_id, error=str(e))
            return {}
        return entry if isinstance(entry, dict) else {}

    async def _read_raw(self, user_id: str, collection: str) -> list[dict]:
        # A pending journal entry is the committed state of its collections
        try:
            pending = await self._read_journal(user_id)
        except StorageError as e:
            logger.error("journal_read_failed", identity=user_id, error=str(e))
            pending = None
        if pending and isinstance(pending.get(collection), list):
            return [item for item in pending[collection] if isinstance(item, dict)]

        key = self._key(user_id, collection)
        try:
            raw = await self._kv.get(key)
        except StorageError as e:
            logger.error("collection_read_failed", key=key, error=str(e))
            return []
        if not raw:
            return []
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.error("collection_corrupt", key=key, error=str(e))
            return []
        if not isinstance(data, list):
            logger.error("collection_corrupt", key=key, error="not a list")
            return []
        return [item for item in data if isinstance(item, dict)]

    async def _load(
        self,
        user_id: str,
        collection: str,
        model: Type[RecordT],
    ) -> tuple[list[RecordT], list[dict]]:
        """Parse a collection. Unreadable records come back separately, untouched."""
        records: list[RecordT] = []
        rejects: list[dict] = []
        for raw in await self._read_raw(user_id, collection):
            try:
                records.append(model.model_validate(raw))
            except ValidationError as e:
                logger.warning(
                    "malformed_record_skipped",
                    collection=collection,
                    record_id=raw.get("id"),
                    error=str(e),
                )
                rejects.append(raw)
        return records, rejects

    async def _dump_collections(self, user_id: str) -> tuple[list[dict], list[dict]]:
        customers, customer_rejects = await self._load(user_id, CUSTOMERS, Customer)
        transactions, transaction_rejects = await self._load(
            user_id, TRANSACTIONS, Transaction
        )
        return (
            _dump(customers, customer_rejects),
            _dump(transactions, transaction_rejects),
        )

    async def _write_collections(self, user_id: str, changes: dict[str, list[dict]]) -> None:
        for collection, records in changes.items():
            await self._kv.set(self._key(user_id, collection), json.dumps(records))

    async def _commit(
        self,
        user_id: str,
        changes: dict[str, list[dict]],
        notify: bool = True,
    ) -> bool:
        """
        Persist one or both collections. Caller holds the identity lock.

        A multi-collection write is committed once its journal entry is
        stored. If a collection write fails after that, the entry stays
        behind: reads are served from it and the next write or recover()
        applies it.
        """
        journal_key = self._key(user_id, JOURNAL)
        try:
            if len(changes) > 1:
                await self._kv.set(journal_key, json.dumps(changes))
            else:
                await self._write_collections(user_id, changes)
        except StorageError as e:
            logger.error(
                "collection_write_failed",
                identity=user_id,
                collections=list(changes),
                error=str(e),
            )
            return False

        if len(changes) > 1:
            try:
                await self._write_collections(user_id, changes)
                await self._kv.delete(journal_key)
            except StorageError as e:
                logger.warning(
                    "journal_pending",
                    identity=user_id,
                    collections=list(changes),
                    error=str(e),
                )

        if notify:
            self.changes.notify(
                ChangeEvent(identity=user_id, collections=tuple(changes))
            )
        return True

    async def _replay_journal(self, user_id: str) -> list[str]:
        """
        Apply and clear a pending journal entry. Caller holds the identity lock.

        Raises StorageError if the entry can't be applied; it is kept then.
        """
        pending = await self._read_journal(user_id)
        if pending is None:
            return []

        replayed = []
        for collection in (CUSTOMERS, TRANSACTIONS):
            records = pending.get(collection)
            if isinstance(records, list):
                await self._kv.set(self._key(user_id, collection), json.dumps(records))
                replayed.append(collection)
        await self._kv.delete(self._key(user_id, JOURNAL))

        if replayed:
            logger.warning("journal_replayed", identity=user_id, collections=replayed)
            if self._audit:
                self._audit.log(SyncEventBuilder.journal_replayed(user_id, replayed))
        return replayed

    async def _settle(self, user_id: str) -> bool:
        """Finish any pending journal entry before a write reads its inputs."""
        try:
            await self._replay_journal(user_id)
        except StorageError as e:
            logger.error("write_refused_journal_pending", identity=user_id, error=str(e))
            return False
        return True

    async def _on_identity_changed(self, previous: Identity, current: Identity) -> None:
        await self.recover(current.user_id)

    async def recover(self, user_id: Optional[str] = None) -> bool:
        """
        Finish a journaled write that was interrupted.

        Returns True if a journal entry was replayed.
        """
        user_id = user_id or self._identity.user_id
        async with self._lock_for(user_id):
            try:
                replayed = await self._replay_journal(user_id)
            except StorageError as e:
                logger.error("journal_replay_failed", identity=user_id, error=str(e))
                return False
        return bool(replayed)

    # -------------------------------------------------------------------------
    # Customers
    # -------------------------------------------------------------------------

    async def list_customers(self) -> list[Customer]:
        customers, _ = await self._load(self._identity.user_id, CUSTOMERS, Customer)
        return customers

    async def get_customer(self, customer_id: str) -> Optional[Customer]:
        customers = await self.list_customers()
        index = _find(customers, customer_id)
        return customers[index] if index is not None else None

    async def add_customer(self, data: Mapping[str, Any]) -> Optional[Customer]:
        """
        Create a customer with a zero balance.

        Returns:
            The new customer, or None if it could not be persisted

        Raises:
            RecordValidationError: If the fields are invalid (e.g. empty name)
        """
        user_id = self._identity.user_id
        customer = _build(Customer, _normalize_fields(data, extra_managed={"balance"}))

        async with self._lock_for(user_id):
            if not await self._settle(user_id):
                return None
            customers, rejects = await self._load(user_id, CUSTOMERS, Customer)
            customers.append(customer)
            ok = await self._commit(user_id, {CUSTOMERS: _dump(customers, rejects)})

        if ok:
            logger.info("customer_added", identity=user_id, customer_id=customer.id)
        return customer if ok else None

    async def update_customer(
        self,
        customer_id: str,
        fields: Mapping[str, Any],
    ) -> Optional[Customer]:
        """
        Edit a customer's own fields. The balance is derived and can't be set.

        Returns None if the customer does not exist or the write failed.
        """
        user_id = self._identity.user_id
        async with self._lock_for(user_id):
            if not await self._settle(user_id):
                return None
            customers, rejects = await self._load(user_id, CUSTOMERS, Customer)
            index = _find(customers, customer_id)
            if index is None:
                logger.info("customer_not_found", identity=user_id, customer_id=customer_id)
                return None

            merged = {
                **customers[index].to_record(),
                **_normalize_fields(fields, extra_managed={"balance"}),
                "updatedAt": utcnow(),
            }
            customers[index] = _build(Customer, merged)
            ok = await self._commit(user_id, {CUSTOMERS: _dump(customers, rejects)})

        return customers[index] if ok else None

    async def delete_customer(self, customer_id: str) -> bool:
        """Delete a customer together with all of its transactions."""
        user_id = self._identity.user_id
        async with self._lock_for(user_id):
            if not await self._settle(user_id):
                return False
            customers, customer_rejects = await self._load(user_id, CUSTOMERS, Customer)
            index = _find(customers, customer_id)
            if index is None:
                logger.info("customer_not_found", identity=user_id, customer_id=customer_id)
                return False
            del customers[index]

            transactions, transaction_rejects = await self._load(
                user_id, TRANSACTIONS, Transaction
            )
            remaining = [t for t in transactions if t.customer_id != customer_id]
            remaining_rejects = [
                raw for raw in transaction_rejects
                if str(raw.get("customerId")) != customer_id
            ]
            ok = await self._commit(user_id, {
                CUSTOMERS: _dump(customers, customer_rejects),
                TRANSACTIONS: _dump(remaining, remaining_rejects),
            })

        if ok:
            logger.info(
                "customer_deleted",
                identity=user_id,
                customer_id=customer_id,
                transactions_removed=len(transactions) - len(remaining),
            )
        return ok

    # -------------------------------------------------------------------------
    # Transactions
    # -------------------------------------------------------------------------

    async def list_transactions(self) -> list[Transaction]:
        """All transactions, newest first."""
        transactions, _ = await self._load(
            self._identity.user_id, TRANSACTIONS, Transaction
        )
        return transactions

    async def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        transactions = await self.list_transactions()
        index = _find(transactions, transaction_id)
        return transactions[index] if index is not None else None

    async def get_customer_transactions(self, customer_id: str) -> list[Transaction]:
        return [
            t for t in await self.list_transactions()
            if t.customer_id == customer_id
        ]

    async def add_transaction(self, data: Mapping[str, Any]) -> Optional[Transaction]:
        """
        Record a transaction and apply it to the linked customer's balance.

        Returns:
            The new transaction, or None if it could not be persisted

        Raises:
            RecordValidationError: If the fields are invalid
        """
        user_id = self._identity.user_id
        fields = _normalize_fields(data)

        async with self._lock_for(user_id):
            if not await self._settle(user_id):
                return None
            customers, customer_rejects = await self._load(user_id, CUSTOMERS, Customer)
            transactions, transaction_rejects = await self._load(
                user_id, TRANSACTIONS, Transaction
            )

            customer_id = fields.get("customerId")
            if customer_id and not fields.get("customerName"):
                index = _find(customers, str(customer_id))
                if index is not None:
                    fields["customerName"] = customers[index].name

            transaction = _build(Transaction, fields)
            transactions.insert(0, transaction)

            changes = {TRANSACTIONS: _dump(transactions, transaction_rejects)}
            if _apply_balance_effect(customers, transaction, 1, transaction.created_at):
                changes[CUSTOMERS] = _dump(customers, customer_rejects)
            ok = await self._commit(user_id, changes)

        if ok:
            logger.info(
                "transaction_added",
                identity=user_id,
                transaction_id=transaction.id,
                customer_id=transaction.customer_id,
            )
        return transaction if ok else None

    async def update_transaction(
        self,
        transaction_id: str,
        fields: Mapping[str, Any],
    ) -> Optional[Transaction]:
        """
        Edit a transaction, moving its balance effect as needed.

        The old effect is reversed on the old customer and the new effect is
        applied on the new customer (they differ if customerId changed).
        Fields not supplied keep their previous values.

        Returns None if the transaction does not exist or the write failed.
        """
        user_id = self._identity.user_id
        updates = _normalize_fields(fields)

        async with self._lock_for(user_id):
            if not await self._settle(user_id):
                return None
            customers, customer_rejects = await self._load(user_id, CUSTOMERS, Customer)
            transactions, transaction_rejects = await self._load(
                user_id, TRANSACTIONS, Transaction
            )
            index = _find(transactions, transaction_id)
            if index is None:
                logger.info(
                    "transaction_not_found",
                    identity=user_id,
                    transaction_id=transaction_id,
                )
                return None

            old = transactions[index]
            now = utcnow()
            merged = {**old.to_record(), **updates, "updatedAt": now}

            new_customer_id = merged.get("customerId") or None
            if (
                "customerId" in updates
                and new_customer_id != old.customer_id
                and "customerName" not in updates
            ):
                customer_index = (
                    _find(customers, str(new_customer_id)) if new_customer_id else None
                )
                merged["customerName"] = (
                    customers[customer_index].name if customer_index is not None else None
                )

            updated = _build(Transaction, merged)
            transactions[index] = updated

            touched = _apply_balance_effect(customers, old, -1, now)
            touched = _apply_balance_effect(customers, updated, 1, now) or touched

            changes = {TRANSACTIONS: _dump(transactions, transaction_rejects)}
            if touched:
                changes[CUSTOMERS] = _dump(customers, customer_rejects)
            ok = await self._commit(user_id, changes)

        return updated if ok else None

    async def delete_transaction(self, transaction_id: str) -> bool:
        """Delete a transaction, reversing its effect on the linked customer."""
        user_id = self._identity.user_id
        async with self._lock_for(user_id):
            if not await self._settle(user_id):
                return False
            customers, customer_rejects = await self._load(user_id, CUSTOMERS, Customer)
            transactions, transaction_rejects = await self._load(
                user_id, TRANSACTIONS, Transaction
            )
            index = _find(transactions, transaction_id)
            if index is None:
                logger.info(
                    "transaction_not_found",
                    identity=user_id,
                    transaction_id=transaction_id,
                )
                return False

            removed = transactions.pop(index)
            changes = {TRANSACTIONS: _dump(transactions, transaction_rejects)}
            if _apply_balance_effect(customers, removed, -1, utcnow()):
                changes[CUSTOMERS] = _dump(customers, customer_rejects)
            ok = await self._commit(user_id, changes)

        if ok:
            logger.info(
                "transaction_deleted",
                identity=user_id,
                transaction_id=transaction_id,
                customer_id=removed.customer_id,
            )
        return ok

    # -------------------------------------------------------------------------
    # Aggregates
    # -------------------------------------------------------------------------

    async def get_stats(self) -> Stats:
        """Dashboard totals from a full scan of both collections."""
        user_id = self._identity.user_id
        async with self._lock_for(user_id):
            transactions, _ = await self._load(user_id, TRANSACTIONS, Transaction)
            customers, _ = await self._load(user_id, CUSTOMERS, Customer)

        total_income = sum(
            (t.amount for t in transactions if t.type is TransactionType.INCOME),
            Decimal("0"),
        )
        total_expenses = sum(
            (t.amount for t in transactions if t.type is TransactionType.EXPENSE),
            Decimal("0"),
        )
        return Stats(
            total_income=total_income,
            total_expenses=total_expenses,
            total_balance=total_income - total_expenses,
            total_customer_balance=sum((c.balance for c in customers), Decimal("0")),
            total_customers=len(customers),
            total_transactions=len(transactions),
        )

    # -------------------------------------------------------------------------
    # Whole-collection access for sync
    # -------------------------------------------------------------------------

    async def read_collections(
        self,
        user_id: Optional[str] = None,
    ) -> tuple[list[dict], list[dict]]:
        """Both collections in storage form, read under the write lock."""
        user_id = user_id or self._identity.user_id
        async with self._lock_for(user_id):
            return await self._dump_collections(user_id)

    async def replace_collections(
        self,
        customers: Optional[Sequence[Mapping[str, Any]]] = None,
        transactions: Optional[Sequence[Mapping[str, Any]]] = None,
        notify: bool = False,
        user_id: Optional[str] = None,
    ) -> bool:
        """
        Overwrite whole collections, e.g. with data pulled from the cloud.

        Collections passed as None are left alone. By default no change
        notification is sent, so adopting cloud data doesn't push it back.
        """
        user_id = user_id or self._identity.user_id
        changes: dict[str, list[dict]] = {}
        if customers is not None:
            changes[CUSTOMERS] = _canonicalize(customers, Customer)
        if transactions is not None:
            changes[TRANSACTIONS] = _canonicalize(transactions, Transaction)
        if not changes:
            return True

        async with self._lock_for(user_id):
            if not await self._settle(user_id):
                return False
            return await self._commit(user_id, changes, notify=notify)

    async def adopt_if_empty(
        self,
        customers: Sequence[Mapping[str, Any]] = (),
        transactions: Sequence[Mapping[str, Any]] = (),
        user_id: Optional[str] = None,
    ) -> Optional[Adoption]:
        """
        Store each given collection only where the local one is empty.

        The emptiness check and the write happen under one hold of the
        identity lock, so a local write can't slip in between and be
        overwritten. No change notification is sent.

        Returns:
            What was adopted and both collections as now stored, or None
            if the write failed
        """
        user_id = user_id or self._identity.user_id
        async with self._lock_for(user_id):
            if not await self._settle(user_id):
                return None
            local_customers, local_transactions = await self._dump_collections(user_id)

            changes: dict[str, list[dict]] = {}
            if customers and not local_customers:
                local_customers = changes[CUSTOMERS] = _canonicalize(customers, Customer)
            if transactions and not local_transactions:
                local_transactions = changes[TRANSACTIONS] = _canonicalize(
                    transactions, Transaction
                )
            if changes and not await self._commit(user_id, changes, notify=False):
                return None

        return Adoption(
            customers_adopted=CUSTOMERS in changes,
            transactions_adopted=TRANSACTIONS in changes,
            customers=local_customers,
            transactions=local_transactions,
        )

    # -------------------------------------------------------------------------
    # Device settings (not namespaced by identity)
    # -------------------------------------------------------------------------

    async def get_setting(self, key: Union[SettingKey, str]) -> Optional[str]:
        """Read a device setting, falling back to its default."""
        key = SettingKey(key)
        try:
            value = await self._kv.get(key.value)
        except StorageError as e:
            logger.error("setting_read_failed", key=key.value, error=str(e))
            value = None
        return value if value is not None else SETTING_DEFAULTS.get(key)

    async def set_setting(self, key: Union[SettingKey, str], value: str) -> bool:
        key = SettingKey(key)
        try:
            await self._kv.set(key.value, value)
            return True
        except StorageError as e:
            logger.error("setting_write_failed", key=key.value, error=str(e))
            return False

    async def delete_setting(self, key: Union[SettingKey, str]) -> bool:
        key = SettingKey(key)
        try:
            await self._kv.delete(key.value)
            return True
        except StorageError as e:
            logger.error("setting_delete_failed", key=key.value, error=str(e))
            return False
