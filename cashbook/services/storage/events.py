"""Change notification for the local record store."""

from typing import Callable

import structlog
from pydantic import BaseModel, ConfigDict

logger = structlog.get_logger(__name__)


class ChangeEvent(BaseModel):
    """Emitted after a write was persisted."""
    model_config = ConfigDict(frozen=True)

    identity: str
    collections: tuple[str, ...]


ChangeListener = Callable[[ChangeEvent], None]


class ChangeNotifier:
    """
    Observer list owned by the record store.

    Listeners run synchronously inside the write that triggered them, so they
    should only schedule work (the sync engine debounces its pushes).
    """

    def __init__(self) -> None:
        self._listeners: list[ChangeListener] = []

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def notify(self, event: ChangeEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error(
                    "change_listener_failed",
                    identity=event.identity,
                    error=str(e),
                )

    def __len__(self) -> int:
        return len(self._listeners)
