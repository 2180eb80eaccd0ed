"""Services package."""

from cashbook.services.remote import (
    FirestoreRESTDocumentStore,
    FirestoreSDKDocumentStore,
    RemoteAuthError,
    RemoteDocumentStore,
    RemoteError,
    RemoteUnavailableError,
    select_remote_store,
)
from cashbook.services.storage import (
    InMemoryKeyValueStore,
    KeyValueStore,
    LocalRecordStore,
    RecordValidationError,
    SQLiteKeyValueStore,
    StorageError,
)

__all__ = [
    # Remote document store
    "FirestoreRESTDocumentStore",
    "FirestoreSDKDocumentStore",
    "RemoteAuthError",
    "RemoteDocumentStore",
    "RemoteError",
    "RemoteUnavailableError",
    "select_remote_store",
    # Local storage
    "InMemoryKeyValueStore",
    "KeyValueStore",
    "LocalRecordStore",
    "RecordValidationError",
    "SQLiteKeyValueStore",
    "StorageError",
]
