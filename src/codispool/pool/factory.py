"""Connection factory for Codis proxy clients.

Codis proxies speak the Redis protocol, so every client variant wraps a
redis-py client. The variant is picked from configuration, not by
subclassing the pool.
"""

import abc
import asyncio
import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Type

import redis
import redis.asyncio

logger = logging.getLogger(__name__)


class ClientVariant(str, Enum):
    """Supported cache client implementations."""
    ASYNC = "redis-asyncio"
    SYNC = "redis"


class CacheClient(abc.ABC):
    """
    Handle to one Codis proxy.

    Wraps the underlying redis-py client and exposes the small lifecycle
    the pool needs: connect, connect/error notifications and close.
    """

    variant: ClientVariant

    def __init__(
        self,
        proxy_id: str,
        address: str,
        options: Optional[Dict[str, Any]] = None,
        log: Optional[logging.Logger] = None,
    ):
        """
        Initialize CacheClient.

        Args:
            proxy_id: Name of the proxy node
            address: Proxy ``host:port``
            options: Keyword options for the redis client
            log: Logger for connection diagnostics
        """
        self.proxy_id = proxy_id
        self.address = address
        self.options = dict(options or {})
        self._log = log or logger
        self._connect_handlers: List[Callable[["CacheClient"], None]] = []
        self._error_handlers: List[Callable[["CacheClient", Exception], None]] = []
        self._closed = False
        self.client = self._create_client()

    @property
    def url(self) -> str:
        return f"redis://{self.address}"

    @property
    def is_closed(self) -> bool:
        return self._closed

    def on_connect(self, handler: Callable[["CacheClient"], None]):
        """Register a callback fired once the proxy answers."""
        self._connect_handlers.append(handler)

    def on_error(self, handler: Callable[["CacheClient", Exception], None]):
        """Register a callback fired when connecting fails."""
        self._error_handlers.append(handler)

    async def connect(self):
        """
        Verify the proxy answers a PING.

        Raises:
            redis.exceptions.RedisError: If the proxy cannot be reached
            OSError: On socket level failures
        """
        try:
            await self._ping()
        except (redis.exceptions.RedisError, OSError) as e:
            for handler in self._error_handlers:
                handler(self, e)
            raise

        for handler in self._connect_handlers:
            handler(self)

    async def close(self):
        """Release the connection. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        await self._close()

    @abc.abstractmethod
    def _create_client(self) -> Any:
        ...

    @abc.abstractmethod
    async def _ping(self):
        ...

    @abc.abstractmethod
    async def _close(self):
        ...

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.proxy_id} @{self.address}>"


class RedisAsyncClient(CacheClient):
    """Proxy handle backed by ``redis.asyncio.Redis``."""

    variant = ClientVariant.ASYNC

    def _create_client(self) -> "redis.asyncio.Redis":
        return redis.asyncio.Redis.from_url(self.url, **self.options)

    async def _ping(self):
        await self.client.ping()

    async def _close(self):
        await self.client.aclose()


class RedisSyncClient(CacheClient):
    """Proxy handle backed by the blocking ``redis.Redis`` client.

    Blocking calls made by the pool run in worker threads so the event
    loop is never stalled.
    """

    variant = ClientVariant.SYNC

    def _create_client(self) -> "redis.Redis":
        return redis.Redis.from_url(self.url, **self.options)

    async def _ping(self):
        await asyncio.to_thread(self.client.ping)

    async def _close(self):
        await asyncio.to_thread(self.client.close)


CLIENT_CLASSES: Dict[ClientVariant, Type[CacheClient]] = {
    ClientVariant.ASYNC: RedisAsyncClient,
    ClientVariant.SYNC: RedisSyncClient,
}


class ConnectionFactory:
    """
    Builds connected proxy handles.

    Responsibilities:
    - Merge the Codis password into the client options
    - Pick the client class for the configured variant
    - Verify connectivity before handing the client out
    """

    def __init__(
        self,
        variant: ClientVariant = ClientVariant.ASYNC,
        password: Optional[str] = None,
        client_options: Optional[Dict[str, Any]] = None,
        log: Optional[logging.Logger] = None,
    ):
        """
        Initialize ConnectionFactory.

        Args:
            variant: Which client implementation to build
            password: Codis password, overrides any password in client_options
            client_options: Pass-through keyword options for the redis client
            log: Logger for connection diagnostics
        """
        self.variant = ClientVariant(variant)
        self.client_class = CLIENT_CLASSES[self.variant]
        self.client_options = dict(client_options or {})
        if password:
            self.client_options["password"] = password
        self._log = log or logger

    def build(self, proxy_id: str, address: str) -> CacheClient:
        """Create an unconnected handle for a proxy."""
        handle = self.client_class(
            proxy_id,
            address,
            options=self.client_options,
            log=self._log,
        )
        handle.on_connect(
            lambda h: self._log.info(f"Connected to codis proxy {h.proxy_id} @{h.address}")
        )
        handle.on_error(
            lambda h, e: self._log.warning(f"Connect to codis proxy {h.proxy_id} @{h.address} failed: {e}")
        )
        return handle

    async def create(self, proxy_id: str, address: str) -> CacheClient:
        """
        Create and connect a handle for a proxy.

        Args:
            proxy_id: Name of the proxy node
            address: Proxy ``host:port``

        Returns:
            Connected CacheClient

        Raises:
            Exception: Whatever the client raised while connecting; the
                half-built handle is closed first
        """
        handle = self.build(proxy_id, address)
        try:
            await handle.connect()
        except Exception:
            await release(handle, self._log)
            raise
        return handle


async def release(handle: CacheClient, log: Optional[logging.Logger] = None):
    """Close a handle, logging and swallowing any failure."""
    log = log or logger
    try:
        await handle.close()
    except Exception as e:
        log.warning(f"Closing client for proxy {handle.proxy_id} failed: {e}")
