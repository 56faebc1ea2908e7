"""
CodisPool - ZooKeeper-driven client pool for Codis proxies

This package watches the Codis proxy registrations published in ZooKeeper
and keeps a pool of ready Redis clients connected to exactly the set of
currently registered proxies.
"""

__version__ = "0.1.0"

from codispool.config import PoolConfig
from codispool.pool.factory import ClientVariant
from codispool.state import ConnectionState

__all__ = [
    "__version__",
    "PoolConfig",
    "ClientVariant",
    "ConnectionState",
    "CodisPool",
    "print_reply",
]


def __getattr__(name: str):
    if name == "CodisPool":
        from codispool.client import CodisPool
        return CodisPool
    if name == "print_reply":
        from codispool.client import print_reply
        return print_reply
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
