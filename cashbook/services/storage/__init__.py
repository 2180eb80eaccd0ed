"""
Storage Services Package

Provides the key-value backend interface, its SQLite and in-memory
implementations, and the record store built on top of them.
"""

from cashbook.services.storage.interface import (
    KeyValueStore,
    RecordValidationError,
    StorageError,
)
from cashbook.services.storage.events import ChangeEvent, ChangeNotifier
from cashbook.services.storage.memory import InMemoryKeyValueStore
from cashbook.services.storage.sqlite import SQLiteKeyValueStore
from cashbook.services.storage.records import (
    CUSTOMERS,
    SETTING_DEFAULTS,
    TRANSACTIONS,
    Adoption,
    LocalRecordStore,
    SettingKey,
    group_transactions_by_day,
)

__all__ = [
    # Interfaces
    "KeyValueStore",
    # Exceptions
    "RecordValidationError",
    "StorageError",
    # Backends
    "InMemoryKeyValueStore",
    "SQLiteKeyValueStore",
    # Record store
    "Adoption",
    "CUSTOMERS",
    "ChangeEvent",
    "ChangeNotifier",
    "LocalRecordStore",
    "SETTING_DEFAULTS",
    "SettingKey",
    "TRANSACTIONS",
    "group_transactions_by_day",
]
