"""
Remote Document Store Package

One interface, two transports (Firestore SDK and Firestore REST), and the
factory that picks between them for the current platform.
"""

from cashbook.services.remote.interface import (
    RemoteAuthError,
    RemoteDocumentStore,
    RemoteError,
    RemoteUnavailableError,
)
from cashbook.services.remote.firestore_rest import FirestoreRESTDocumentStore
from cashbook.services.remote.firestore_sdk import FirestoreSDKDocumentStore
from cashbook.services.remote.factory import select_remote_store

__all__ = [
    # Interface
    "RemoteDocumentStore",
    # Exceptions
    "RemoteAuthError",
    "RemoteError",
    "RemoteUnavailableError",
    # Transports
    "FirestoreRESTDocumentStore",
    "FirestoreSDKDocumentStore",
    "select_remote_store",
]
