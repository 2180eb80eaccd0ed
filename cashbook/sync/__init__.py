"""
Cloud Sync Package

Connectivity tracking and the engine that keeps the cloud copy of a user's
data in step with the device.
"""

from cashbook.sync.connectivity import (
    ConnectivityMonitor,
    HttpConnectivityProbe,
)
from cashbook.sync.engine import SyncEngine, snapshot_fingerprint

__all__ = [
    "ConnectivityMonitor",
    "HttpConnectivityProbe",
    "SyncEngine",
    "snapshot_fingerprint",
]
