"""ZooKeeper access behind a small asyncio interface.

The watcher only needs four capabilities from the coordination service:
start a session, list children with a watch, read node data with a watch,
and close. ``KazooCoordinationClient`` provides them on top of kazoo,
moving every kazoo callback (which runs on kazoo's own threads) onto the
asyncio event loop that owns the pool.
"""

import abc
import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from kazoo.client import KazooClient
from kazoo.protocol.states import EventType, KazooState

from codispool.exceptions import CoordinationError

logger = logging.getLogger(__name__)


class WatchEventType(str, Enum):
    """Kinds of watch notifications."""
    CREATED = "created"
    DELETED = "deleted"
    DATA_CHANGED = "data_changed"
    CHILDREN_CHANGED = "children_changed"
    NONE = "none"


@dataclass(frozen=True)
class WatchEvent:
    """A fired watch."""
    type: WatchEventType
    path: str
    state: Optional[str] = None


WatchCallback = Callable[[WatchEvent], None]


class CoordinationClient(abc.ABC):
    """Capabilities the discovery loop needs from the coordination service.

    Watches are single-fire: a callback passed to ``get_children`` or
    ``get_data`` runs at most once, on the event loop.
    """

    servers: str

    @abc.abstractmethod
    async def start(self):
        """Establish the session.

        Raises:
            CoordinationError: If the client is closed before the session
                is established
        """

    @abc.abstractmethod
    async def get_children(self, path: str, watch: WatchCallback) -> List[str]:
        """List children of a path and watch it for membership changes."""

    @abc.abstractmethod
    async def get_data(self, path: str, watch: WatchCallback) -> bytes:
        """Read a node's data and watch it for changes or deletion."""

    @abc.abstractmethod
    async def close(self):
        """Close the session. Safe to call more than once."""


_EVENT_TYPES = {
    EventType.CREATED: WatchEventType.CREATED,
    EventType.DELETED: WatchEventType.DELETED,
    EventType.CHANGED: WatchEventType.DATA_CHANGED,
    EventType.CHILD: WatchEventType.CHILDREN_CHANGED,
    EventType.NONE: WatchEventType.NONE,
}


class KazooCoordinationClient(CoordinationClient):
    """
    CoordinationClient backed by kazoo.

    Responsibilities:
    - Translate kazoo session states into a one-shot "connected" signal
    - Bridge kazoo async results and watches onto the event loop
    - Log session state changes
    """

    def __init__(
        self,
        servers: str,
        session_timeout: float = 30.0,
        connection_retries: int = 3,
        options: Optional[Dict[str, Any]] = None,
        log: Optional[logging.Logger] = None,
    ):
        """
        Initialize KazooCoordinationClient.

        Args:
            servers: ZooKeeper connect string (``host:port,host:port``)
            session_timeout: Session timeout in seconds
            connection_retries: Connection attempts before kazoo gives up
            options: Extra keyword options for KazooClient, overriding the above
            log: Logger for session diagnostics
        """
        self.servers = servers
        self._log = log or logger

        kwargs: Dict[str, Any] = {
            "hosts": servers,
            "timeout": session_timeout,
            "connection_retry": {"max_tries": connection_retries},
        }
        kwargs.update(options or {})
        self._kwargs = kwargs

        self._client: Optional[KazooClient] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._connected: Optional[asyncio.Future] = None
        self._closed = False

    async def start(self):
        if self._closed:
            raise CoordinationError(f"ZooKeeper client for {self.servers} is closed")

        self._loop = asyncio.get_running_loop()
        self._connected = self._loop.create_future()

        self._client = KazooClient(**self._kwargs)
        self._client.add_listener(self._state_listener)
        self._client.start_async()
        self._log.info(f"Connecting to ZooKeeper at {self.servers}")

        await self._connected
        self._log.info(f"Zookeeper successfully connected on {self.servers}")

    async def get_children(self, path: str, watch: WatchCallback) -> List[str]:
        client = self._require_client()
        result = client.get_children_async(path, watch=self._bridge_watch(watch))
        return list(await self._await_result(result, path))

    async def get_data(self, path: str, watch: WatchCallback) -> bytes:
        client = self._require_client()
        result = client.get_async(path, watch=self._bridge_watch(watch))
        data, _stat = await self._await_result(result, path)
        return data or b""

    async def close(self):
        if self._closed:
            return
        self._closed = True

        if self._connected is not None and not self._connected.done():
            self._connected.set_exception(
                CoordinationError(f"Session to {self.servers} closed before it was established")
            )

        if self._client is not None:
            await asyncio.to_thread(self._shutdown, self._client)
        self._log.info(f"ZooKeeper session to {self.servers} closed")

    def _shutdown(self, client: KazooClient):
        client.stop()
        client.close()

    def _require_client(self) -> KazooClient:
        if self._client is None or self._closed:
            raise CoordinationError(f"ZooKeeper client for {self.servers} is not running")
        return self._client

    def _call_on_loop(self, callback: Callable, *args):
        """Schedule a callback on the owning loop from a kazoo thread."""
        try:
            self._loop.call_soon_threadsafe(callback, *args)
        except RuntimeError:
            # Loop already closed; nothing left to notify
            pass

    def _state_listener(self, state: str):
        # Runs on a kazoo thread and must not block
        self._call_on_loop(self._on_state, state)

    def _on_state(self, state: str):
        self._log.info(f"ZooKeeper session state: {state}")
        if state == KazooState.CONNECTED and self._connected is not None and not self._connected.done():
            self._connected.set_result(True)

    def _bridge_watch(self, watch: WatchCallback) -> Callable:
        def _kazoo_watch(event):
            translated = WatchEvent(
                type=_EVENT_TYPES.get(event.type, WatchEventType.NONE),
                path=event.path,
                state=event.state,
            )
            self._call_on_loop(watch, translated)
        return _kazoo_watch

    def _await_result(self, async_result, path: str) -> asyncio.Future:
        """Turn a kazoo IAsyncResult into an asyncio future."""
        future = self._loop.create_future()

        def _transfer(result):
            if future.cancelled():
                return
            try:
                future.set_result(result.get_nowait())
            except Exception as e:
                error = CoordinationError(f"ZooKeeper request failed: {e!r}", path=path)
                error.__cause__ = e
                future.set_exception(error)

        async_result.rawlink(lambda result: self._call_on_loop(_transfer, result))
        return future
