"""Data models exchanged with ZooKeeper."""

from codispool.protocol.models import ProxyDetail

__all__ = [
    "ProxyDetail",
]
