"""Proxy client construction and pooling."""

from codispool.pool.factory import (
    CacheClient,
    ClientVariant,
    ConnectionFactory,
    RedisAsyncClient,
    RedisSyncClient,
)
from codispool.pool.connection_pool import ConnectionPool, PoolEntry

__all__ = [
    "CacheClient",
    "ClientVariant",
    "ConnectionFactory",
    "RedisAsyncClient",
    "RedisSyncClient",
    "ConnectionPool",
    "PoolEntry",
]
