"""
Identity Context

Tracks who is using the app right now: an authenticated user or the guest.
Local storage keys are namespaced by this identity, and only authenticated
identities are ever synced to the cloud.

The authentication flows live outside this package. They report every
sign-in, sign-out and guest transition through ``set_identity``.
"""

from typing import Awaitable, Callable, Optional

import structlog
from pydantic import BaseModel, ConfigDict, Field

logger = structlog.get_logger(__name__)

DEFAULT_GUEST_ID = "guest-user"


class Identity(BaseModel):
    """An immutable identity value."""
    model_config = ConfigDict(frozen=True)

    user_id: str = Field(..., min_length=1)
    id_token: Optional[str] = Field(default=None, repr=False)
    is_guest: bool = False


IdentityListener = Callable[[Identity, Identity], Awaitable[None]]


class IdentityContext:
    """
    Owner of the current identity.

    Listeners are awaited in subscription order on every change of user.
    A token refresh for the same user does not notify anyone.
    """

    def __init__(self, guest_id: str = DEFAULT_GUEST_ID):
        self._guest = Identity(user_id=guest_id, is_guest=True)
        self._current = self._guest
        self._listeners: list[IdentityListener] = []

    @property
    def current(self) -> Identity:
        return self._current

    @property
    def user_id(self) -> str:
        return self._current.user_id

    @property
    def guest_id(self) -> str:
        return self._guest.user_id

    @property
    def is_authenticated(self) -> bool:
        return not self._current.is_guest

    def id_token(self) -> Optional[str]:
        """Bearer token of the current identity, if the auth layer supplied one."""
        return self._current.id_token

    def namespaced(self, key: str, user_id: Optional[str] = None) -> str:
        """Storage key for ``key`` within an identity's namespace."""
        return f"{user_id or self._current.user_id}_{key}"

    def subscribe(self, listener: IdentityListener) -> Callable[[], None]:
        """Register a listener; returns a function that unregisters it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def set_identity(
        self,
        user_id: Optional[str],
        id_token: Optional[str] = None,
    ) -> Identity:
        """
        Switch to a user, or to the guest when ``user_id`` is empty.

        Returns the new current identity.
        """
        previous = self._current
        if not user_id or user_id == self._guest.user_id:
            current = self._guest
        else:
            current = Identity(user_id=user_id, id_token=id_token)

        self._current = current
        if previous.user_id == current.user_id:
            return current

        logger.info(
            "identity_changed",
            previous=previous.user_id,
            current=current.user_id,
            authenticated=not current.is_guest,
        )
        for listener in list(self._listeners):
            try:
                await listener(previous, current)
            except Exception as e:
                logger.error(
                    "identity_listener_failed",
                    listener=getattr(listener, "__qualname__", repr(listener)),
                    error=str(e),
                )
        return current

    def update_token(self, id_token: Optional[str]) -> None:
        """Replace the bearer token of the signed-in user (token refresh)."""
        if self._current.is_guest:
            return
        self._current = self._current.model_copy(update={"id_token": id_token})
