"""
Abstract Remote Document Store Interface

DESIGN DECISION: The sync engine talks to the cloud through exactly two
operations on one document per user. Two transports implement them:
1. The Firestore SDK, where the runtime can host it
2. Plain HTTPS against the Firestore REST API, everywhere else

The engine never knows which one is active.
"""

from abc import ABC, abstractmethod
from typing import Any, Mapping, Optional


class RemoteDocumentStore(ABC):
    """Read and merge-write the per-user sync document."""

    name: str = "remote"

    @abstractmethod
    async def read_document(self, user_id: str) -> Optional[dict[str, Any]]:
        """
        Read the user's document.

        Returns:
            The document as plain Python data, or None if it doesn't exist yet

        Raises:
            RemoteError: If the document could not be read
        """
        pass

    @abstractmethod
    async def write_document(
        self,
        user_id: str,
        payload: Mapping[str, Any],
        merge: bool = True,
    ) -> None:
        """
        Write the user's document.

        With merge=True only the top-level fields in ``payload`` are
        replaced; any other fields already on the document are kept.

        Raises:
            RemoteError: If the write fails
        """
        pass

    async def close(self) -> None:
        """Release transport resources."""
        return None


class RemoteError(Exception):
    """Base exception for remote document operations."""
    pass


class RemoteAuthError(RemoteError):
    """The request was rejected for missing or invalid credentials."""
    pass


class RemoteUnavailableError(RemoteError):
    """The remote service could not be reached or is temporarily failing."""
    pass
