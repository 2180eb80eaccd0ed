"""
Sync Activity Logger

DESIGN DECISION: Every sync attempt is logged, successful or not.
This provides:
1. Debugging capability for "why didn't my data show up on the other phone"
2. A history the settings screen can show the user
3. A single place where structured logging is configured

The logger:
- Never raises (a logging problem must not break a sync)
- Keeps a bounded in-memory history, newest last
"""

import logging
from collections import deque
from typing import Optional

import structlog

from cashbook.models.audit import SyncEvent, SyncSeverity


def configure_logging(debug: bool = False) -> None:
    """Configure structlog on top of stdlib logging."""
    logging.basicConfig(
        format="%(message)s",
        level=logging.DEBUG if debug else logging.INFO,
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer()
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()


class SyncAuditLog:
    """
    Central sync activity log.

    Logs events both to:
    1. Structured local log (for debugging)
    2. An in-memory history (for the sync status screen)
    """

    def __init__(self, max_events: int = 200):
        self._events: deque[SyncEvent] = deque(maxlen=max_events)
        self._logger = structlog.get_logger("cashbook.sync")

    def log(self, event: SyncEvent) -> None:
        """Record an event and emit it as a structured log line."""
        self._events.append(event)

        log_dict = event.to_log_dict()
        if event.severity == SyncSeverity.ERROR:
            self._logger.error("sync_event", **log_dict)
        elif event.severity == SyncSeverity.WARNING:
            self._logger.warning("sync_event", **log_dict)
        elif event.severity == SyncSeverity.DEBUG:
            self._logger.debug("sync_event", **log_dict)
        else:
            self._logger.info("sync_event", **log_dict)

    def recent_events(self, limit: int = 50) -> list[SyncEvent]:
        """Most recent events, newest first."""
        events = list(self._events)[-limit:]
        events.reverse()
        return events

    def last_event(self, identity: Optional[str] = None) -> Optional[SyncEvent]:
        """Most recent event, optionally restricted to one user."""
        for event in reversed(self._events):
            if identity is None or event.identity == identity:
                return event
        return None

    def clear(self) -> None:
        self._events.clear()
