"""
Firestore SDK Transport

Uses the official async Firestore client. The client is stateful and
pre-authenticated (service account or application default credentials),
and performs merge writes on the server.
"""

import asyncio
from typing import Any, Mapping, Optional

import structlog
from google.api_core import exceptions as google_exceptions
from google.auth import exceptions as auth_exceptions
from google.cloud import firestore
from google.oauth2.service_account import Credentials
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from cashbook.config import FirestoreSettings, get_settings
from cashbook.services.remote.interface import (
    RemoteAuthError,
    RemoteDocumentStore,
    RemoteError,
    RemoteUnavailableError,
)

logger = structlog.get_logger(__name__)

SCOPES = [
    "https://www.googleapis.com/auth/datastore",
    "https://www.googleapis.com/auth/cloud-platform",
]


def _translate(error: google_exceptions.GoogleAPIError, action: str) -> RemoteError:
    if isinstance(error, (google_exceptions.Unauthenticated, google_exceptions.PermissionDenied)):
        return RemoteAuthError(f"Firestore {action} not authorized: {error}")
    if isinstance(error, (
        google_exceptions.ServiceUnavailable,
        google_exceptions.DeadlineExceeded,
        google_exceptions.TooManyRequests,
    )):
        return RemoteUnavailableError(f"Firestore {action} unavailable: {error}")
    return RemoteError(f"Firestore {action} failed: {error}")


class FirestoreSDKDocumentStore(RemoteDocumentStore):
    """Per-user documents under ``<collection>/<user_id>`` via the SDK."""

    name = "sdk"

    def __init__(
        self,
        settings: Optional[FirestoreSettings] = None,
        client: Optional[firestore.AsyncClient] = None,
    ):
        self._settings = settings or get_settings().firestore
        self._client = client

    def _build_client(self) -> firestore.AsyncClient:
        credentials = None
        if self._settings.credentials_path:
            credentials = Credentials.from_service_account_file(
                self._settings.credentials_path,
                scopes=SCOPES,
            )
        return firestore.AsyncClient(
            project=self._settings.project_id,
            credentials=credentials,
            database=self._settings.database_id,
        )

    # Only network trouble while resolving credentials is worth another try
    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type(auth_exceptions.TransportError),
        reraise=True,
    )
    async def _create_client(self) -> firestore.AsyncClient:
        # Credential loading reads files and may call the metadata server
        return await asyncio.to_thread(self._build_client)

    async def connect(self) -> firestore.AsyncClient:
        """
        Create the Firestore client on first use.

        Uses the configured service account file, or application default
        credentials when none is configured.
        """
        if self._client is None:
            try:
                self._client = await self._create_client()
            except FileNotFoundError:
                raise RemoteError(
                    f"Firestore credentials file not found: {self._settings.credentials_path}"
                )
            except auth_exceptions.TransportError as e:
                raise RemoteUnavailableError(f"Failed to create Firestore client: {e}")
            except auth_exceptions.DefaultCredentialsError as e:
                raise RemoteAuthError(f"No Firestore credentials available: {e}")
            except (auth_exceptions.GoogleAuthError, ValueError) as e:
                raise RemoteError(f"Failed to create Firestore client: {e}")

        return self._client

    async def _document(self, user_id: str):
        client = await self.connect()
        return client.collection(self._settings.collection).document(user_id)

    async def read_document(self, user_id: str) -> Optional[dict[str, Any]]:
        document = await self._document(user_id)
        try:
            snapshot = await document.get()
        except google_exceptions.GoogleAPIError as e:
            raise _translate(e, "read") from e

        if not snapshot.exists:
            logger.info("remote_document_missing", transport=self.name, user_id=user_id)
            return None
        return snapshot.to_dict() or {}

    async def write_document(
        self,
        user_id: str,
        payload: Mapping[str, Any],
        merge: bool = True,
    ) -> None:
        document = await self._document(user_id)
        try:
            await document.set(dict(payload), merge=merge)
        except google_exceptions.GoogleAPIError as e:
            raise _translate(e, "write") from e
        logger.debug("remote_document_written", transport=self.name, user_id=user_id)

    async def close(self) -> None:
        # The channel is released with the client object
        self._client = None
