"""
Firestore REST Transport

For runtimes where the SDK can't run reliably we call the Firestore REST API
directly with the signed-in user's ID token.

TRADEOFFS:
- We encode/decode the typed wire format ourselves (see codec.py)
- Token refresh belongs to the auth layer; an expired token surfaces here
  as RemoteAuthError and the sync engine simply retries later
"""

import asyncio
import re
from typing import Any, Callable, Mapping, Optional

import requests
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from cashbook.config import FirestoreSettings, get_settings
from cashbook.services.remote.codec import decode_document, encode_document
from cashbook.services.remote.interface import (
    RemoteAuthError,
    RemoteDocumentStore,
    RemoteError,
    RemoteUnavailableError,
)

logger = structlog.get_logger(__name__)

TokenProvider = Callable[[], Optional[str]]

_SIMPLE_FIELD = re.compile(r"^[A-Za-z_][A-Za-z_0-9]*$")


def field_path(name: str) -> str:
    """Quote a top-level field name for use in an update mask."""
    if _SIMPLE_FIELD.match(name):
        return name
    escaped = name.replace("\\", "\\\\").replace("`", "\\`")
    return f"`{escaped}`"


def _error_message(response: requests.Response) -> str:
    try:
        return response.json()["error"]["message"]
    except (ValueError, KeyError, TypeError):
        return response.text or f"HTTP {response.status_code}"


class FirestoreRESTDocumentStore(RemoteDocumentStore):
    """Per-user documents under ``<collection>/<user_id>`` via HTTPS."""

    name = "rest"

    def __init__(
        self,
        token_provider: TokenProvider,
        settings: Optional[FirestoreSettings] = None,
        session: Optional[requests.Session] = None,
    ):
        self._token_provider = token_provider
        self._settings = settings or get_settings().firestore
        self._session = session or requests.Session()

    @retry(
        retry=retry_if_exception_type((requests.ConnectionError, requests.Timeout)),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        reraise=True,
    )
    def _send(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        return self._session.request(
            method,
            url,
            timeout=self._settings.request_timeout_seconds,
            **kwargs,
        )

    async def _request(self, method: str, user_id: str, **kwargs: Any) -> requests.Response:
        token = self._token_provider()
        if not token:
            raise RemoteAuthError("No auth token available")

        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }
        url = self._settings.document_url(user_id)
        try:
            return await asyncio.to_thread(self._send, method, url, headers=headers, **kwargs)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise RemoteUnavailableError(f"Firestore unreachable: {e}") from e
        except requests.RequestException as e:
            raise RemoteError(f"Firestore request failed: {e}") from e

    def _raise_for_status(self, response: requests.Response, action: str) -> None:
        status = response.status_code
        if 200 <= status < 300:
            return
        message = _error_message(response)
        if status in (401, 403):
            raise RemoteAuthError(f"Firestore {action} not authorized: {message}")
        if status == 429 or status >= 500:
            raise RemoteUnavailableError(f"Firestore {action} unavailable: {message}")
        raise RemoteError(f"Firestore {action} failed: {message}")

    async def read_document(self, user_id: str) -> Optional[dict[str, Any]]:
        response = await self._request("GET", user_id)
        if response.status_code == 404:
            # First login: nothing has been synced yet
            logger.info("remote_document_missing", transport=self.name, user_id=user_id)
            return None
        self._raise_for_status(response, "read")
        try:
            return decode_document(response.json())
        except ValueError as e:
            raise RemoteError(f"Firestore returned invalid JSON: {e}") from e

    async def write_document(
        self,
        user_id: str,
        payload: Mapping[str, Any],
        merge: bool = True,
    ) -> None:
        # Without an update mask PATCH replaces the whole document
        params = (
            [("updateMask.fieldPaths", field_path(key)) for key in payload]
            if merge else None
        )
        response = await self._request(
            "PATCH",
            user_id,
            params=params,
            json=encode_document(payload),
        )
        self._raise_for_status(response, "write")
        logger.debug("remote_document_written", transport=self.name, user_id=user_id)

    async def close(self) -> None:
        self._session.close()
