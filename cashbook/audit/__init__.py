"""Sync activity logging package."""

from cashbook.audit.logger import SyncAuditLog, configure_logging

__all__ = ["SyncAuditLog", "configure_logging"]
