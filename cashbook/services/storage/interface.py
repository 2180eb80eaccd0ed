"""
Abstract Key-Value Storage Interface

DESIGN DECISION: The record store sits on top of a tiny key -> string
interface. This allows us to:
1. Use SQLite on a device and an in-memory dict in tests
2. Keep JSON encoding, namespacing and balance rules out of the backends
3. Swap the backend without touching business logic

The interface is intentionally minimal: get, set, delete.
"""

from abc import ABC, abstractmethod
from typing import Optional


class KeyValueStore(ABC):
    """
    Abstract interface for string key-value persistence.

    Implementations raise StorageError when the backend fails.
    """

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """
        Read a value.

        Returns:
            The stored string, or None if the key is absent

        Raises:
            StorageError: If the backend cannot be read
        """
        pass

    @abstractmethod
    async def set(self, key: str, value: str) -> None:
        """
        Write a value, replacing any previous one.

        Raises:
            StorageError: If the write fails
        """
        pass

    @abstractmethod
    async def delete(self, key: str) -> None:
        """
        Remove a key. Removing an absent key is not an error.

        Raises:
            StorageError: If the delete fails
        """
        pass

    async def close(self) -> None:
        """Release backend resources."""
        return None


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class RecordValidationError(StorageError):
    """Caller supplied record fields that fail validation."""
    pass
