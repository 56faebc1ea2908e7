"""Proxy discovery through ZooKeeper."""

from codispool.discovery.coordination import (
    CoordinationClient,
    KazooCoordinationClient,
    WatchEvent,
    WatchEventType,
)
from codispool.discovery.differ import diff_membership
from codispool.discovery.timeout_guard import TimeoutGuard
from codispool.discovery.watch import WatchSubscription
from codispool.discovery.watcher import CoordinationWatcher

__all__ = [
    "CoordinationClient",
    "KazooCoordinationClient",
    "WatchEvent",
    "WatchEventType",
    "diff_membership",
    "TimeoutGuard",
    "WatchSubscription",
    "CoordinationWatcher",
]
