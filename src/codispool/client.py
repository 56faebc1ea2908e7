"""Consumer facing Codis client pool."""

import logging
from typing import Any, Dict, Mapping, Optional, Union

from codispool.config import PoolConfig
from codispool.diagnostics import resolve_logger
from codispool.discovery.coordination import CoordinationClient, KazooCoordinationClient
from codispool.discovery.watcher import CoordinationWatcher
from codispool.events import EventBus, EventHandler
from codispool.exceptions import CodisPoolError, ConfigurationError
from codispool.pool.connection_pool import ConnectionPool, PoolEntry
from codispool.pool.factory import ConnectionFactory
from codispool.state import ConnectionState, StateMachine


logger = logging.getLogger(__name__)


def print_reply(error: Optional[Exception], reply: Any = None):
    """Log a command reply or its error; handy as a quick callback."""
    if error is not None:
        logger.error(f"Error: {error}")
    else:
        logger.info(f"Reply: {reply}")


class CodisPool:
    """
    Pool of Redis clients for the Codis proxies registered in ZooKeeper.

    Usage::

        pool = CodisPool(PoolConfig(zk_servers="zk1:2181", zk_proxy_dir="/jodis/demo"))
        pool.on("connected", lambda err, client: ...)
        await pool.start()
        client = pool.get_random_client(pool.client_pool)

    Events:
    - ``connected``: once, after the first batch of proxies is handled
    - ``reconnected``: after every later batch and every removed proxy

    Handlers receive ``(error, client)``; ``error`` is a PoolEmptyError
    when no proxy is available and ``client`` is then None.
    """

    print_reply = staticmethod(print_reply)

    def __init__(
        self,
        config: Union[PoolConfig, Dict[str, Any]],
        coordination: Optional[CoordinationClient] = None,
        factory: Optional[ConnectionFactory] = None,
    ):
        """
        Initialize CodisPool.

        Args:
            config: Pool configuration or a dict of its fields
            coordination: Coordination client (default: kazoo, from config)
            factory: Connection factory (default: from config)

        Raises:
            ConfigurationError: If required options are missing or invalid
        """
        if config is None:
            raise ConfigurationError("A pool configuration is required!")
        if not isinstance(config, PoolConfig):
            config = PoolConfig.from_dict(config)
        self.config = config

        self._log = resolve_logger(config.log)

        self.events = EventBus(log=self._log)
        self._pool = ConnectionPool(log=self._log)
        self._state = StateMachine()

        self.coordination = coordination or KazooCoordinationClient(
            config.zk_servers,
            session_timeout=config.session_timeout,
            connection_retries=config.connection_retries,
            options=config.zk_client_options,
            log=self._log,
        )
        self.factory = factory or ConnectionFactory(
            variant=config.client_variant,
            password=config.codis_password,
            client_options=config.redis_client_options,
            log=self._log,
        )

        self.watcher = CoordinationWatcher(
            self.coordination,
            config.zk_proxy_dir,
            factory=self.factory,
            pool=self._pool,
            events=self.events,
            state=self._state,
            session_deadline=config.session_deadline,
            proxy_address_key=config.proxy_address_key,
            log=self._log,
        )

    @property
    def state(self) -> ConnectionState:
        return self._state.state

    @property
    def client_pool(self) -> ConnectionPool:
        """Live pool of proxy clients."""
        return self._pool

    @property
    def current_client(self) -> Optional[Any]:
        """Client selected for the most recent event."""
        return self.watcher.current_client

    @property
    def failure(self) -> Optional[CodisPoolError]:
        """Why discovery stopped, if it did."""
        return self.watcher.failure

    def on(self, event: str, handler: EventHandler):
        """Register a handler for ``connected`` or ``reconnected``."""
        self.events.subscribe(event, handler)

    def off(self, event: str, handler: EventHandler) -> bool:
        """Remove a handler registered with ``on``."""
        return self.events.unsubscribe(event, handler)

    async def start(self):
        """Connect to ZooKeeper and start following the proxy directory."""
        self._log.info(
            f"Starting Codis pool for {self.config.zk_proxy_dir} on {self.config.zk_servers}"
        )
        await self.watcher.start()

    async def stop(self):
        """Close the ZooKeeper session and every proxy client."""
        await self.watcher.stop()

    async def wait_until_connected(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for the first batch of proxies.

        Returns:
            True once connected, False on timeout or if discovery stopped
        """
        return await self.watcher.wait_settled(timeout)

    def random_client(self) -> Optional[Any]:
        """Pick a random live client, or None."""
        return self._pool.random_client()

    @staticmethod
    def get_random_client(
        pool: Union[ConnectionPool, Mapping[str, PoolEntry]],
    ) -> Optional[Any]:
        """Pick a random live client from a pool snapshot, or None."""
        return ConnectionPool.get_random_client(pool)
