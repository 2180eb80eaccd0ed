"""Pick the remote transport for this process."""

from typing import Optional

import structlog

from cashbook.config import Settings, get_settings
from cashbook.identity import IdentityContext
from cashbook.services.remote.firestore_rest import FirestoreRESTDocumentStore
from cashbook.services.remote.firestore_sdk import FirestoreSDKDocumentStore
from cashbook.services.remote.interface import RemoteDocumentStore

logger = structlog.get_logger(__name__)


def select_remote_store(
    identity: IdentityContext,
    settings: Optional[Settings] = None,
) -> RemoteDocumentStore:
    """
    Choose the SDK transport on the web and REST everywhere else.

    The ``REMOTE_TRANSPORT`` setting (sdk/rest) wins over the platform choice.
    """
    settings = settings or get_settings()
    app = settings.app

    transport = app.remote_transport
    if transport == "auto":
        transport = "sdk" if app.is_web else "rest"

    logger.info("remote_transport_selected", transport=transport, platform=app.platform)

    if transport == "sdk":
        return FirestoreSDKDocumentStore(settings=settings.firestore)
    return FirestoreRESTDocumentStore(
        token_provider=identity.id_token,
        settings=settings.firestore,
    )
