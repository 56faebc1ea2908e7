"""Discovery loop: ZooKeeper proxy listing to pool reconciliation."""

import asyncio
import functools
import logging
from typing import Any, Dict, List, Optional, Tuple

from codispool.discovery.coordination import CoordinationClient, WatchEvent, WatchEventType
from codispool.discovery.differ import diff_membership
from codispool.discovery.timeout_guard import TimeoutGuard
from codispool.discovery.watch import WatchSubscription
from codispool.events import EventBus
from codispool.exceptions import CodisPoolError, PoolEmptyError, SessionTimeoutError
from codispool.pool.connection_pool import ConnectionPool
from codispool.pool.factory import CacheClient, ConnectionFactory
from codispool.protocol.models import ProxyDetail
from codispool.state import StateMachine

logger = logging.getLogger(__name__)


class CoordinationWatcher:
    """
    Keeps the connection pool in line with the proxies registered in ZooKeeper.

    Responsibilities:
    - Establish the session, bounded by a TimeoutGuard
    - Watch the proxy directory and reconcile every listing as one batch
    - Watch each proxy node and rebuild its client when its data changes
    - Publish one event per batch and one per removed proxy

    Batches run one at a time under a lock on the event loop, so the pool
    and the last listing are only ever touched by one batch.
    """

    def __init__(
        self,
        coordination: CoordinationClient,
        proxy_dir: str,
        factory: ConnectionFactory,
        pool: ConnectionPool,
        events: EventBus,
        state: Optional[StateMachine] = None,
        session_deadline: float = 90.0,
        proxy_address_key: str = "addr",
        log: Optional[logging.Logger] = None,
    ):
        """
        Initialize CoordinationWatcher.

        Args:
            coordination: Coordination service client
            proxy_dir: Directory whose children are the proxy nodes
            factory: Builds connected proxy clients
            pool: Pool receiving the clients
            events: Event bus for subscriber notifications
            state: Connection state machine
            session_deadline: Seconds allowed for the session to establish
            proxy_address_key: JSON field of a proxy node holding its address
            log: Logger for discovery diagnostics
        """
        self.coordination = coordination
        self.proxy_dir = proxy_dir.rstrip("/") or "/"
        self.factory = factory
        self.pool = pool
        self.events = events
        self.state = state or StateMachine()
        self.proxy_address_key = proxy_address_key
        self._log = log or logger

        self.guard = TimeoutGuard(session_deadline, self._expire_session, log=self._log)

        # Last listing of the proxy directory
        self._last_proxies: List[str] = []
        self._batch_lock: Optional[asyncio.Lock] = None

        self._children_watch: Optional[WatchSubscription] = None
        self._data_watches: Dict[str, WatchSubscription] = {}

        # Client handed out with the most recent event
        self.current_client: Optional[Any] = None
        self.failure: Optional[CodisPoolError] = None

        self._task: Optional[asyncio.Task] = None
        self._settled: Optional[asyncio.Event] = None
        self._established = False
        self._running = False

    @property
    def last_proxies(self) -> List[str]:
        """Proxy ids seen in the last listing."""
        return list(self._last_proxies)

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self):
        """Start the session deadline and the discovery loop."""
        if self._running:
            self._log.warning("Watcher already running")
            return

        # Bound to the running loop, not the one current at construction
        self._batch_lock = asyncio.Lock()
        self._settled = asyncio.Event()
        self._established = False

        self._running = True
        self.guard.start()
        self._task = asyncio.create_task(self._run())

    async def stop(self):
        """Stop watching, close the session and release every client."""
        self._running = False
        self.guard.cancel()

        if self._children_watch is not None:
            self._children_watch.cancel()
        for subscription in self._data_watches.values():
            subscription.cancel()
        self._data_watches.clear()

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

        await self.coordination.close()

        if self._batch_lock is not None:
            async with self._batch_lock:
                for proxy_id in self.pool.keys():
                    await self.pool.remove(proxy_id)

        if self._settled is not None:
            self._settled.set()
        self._log.info("Watcher stopped")

    async def wait_settled(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for the first batch, or for discovery to give up.

        Args:
            timeout: Maximum time to wait (None waits forever)

        Returns:
            True if the first batch has completed
        """
        if self._settled is None:
            return False
        try:
            await asyncio.wait_for(self._settled.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return self.state.has_connected

    async def _run(self):
        try:
            await self.coordination.start()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.guard.cancel()
            await self.guard.wait()
            if self.failure is None:
                self.failure = CodisPoolError(f"ZooKeeper session failed: {e}")
            self._log.error(f"Discovery stopped: {self.failure}")
            self._running = False
            self._settled.set()
            return

        self._established = True
        self.guard.cancel()

        self._children_watch = WatchSubscription(
            self.coordination.get_children,
            self.proxy_dir,
            on_result=self.reconcile,
            on_fire=self._on_children_fired,
            log=self._log,
        )
        try:
            children = await self._children_watch.start()
        except Exception as e:
            self.failure = CodisPoolError(f"Listing {self.proxy_dir} failed: {e}")
            self._log.error(f"Zookeeper getChildren error in {self.proxy_dir}: {e}")
            self._settled.set()
            return

        await self.reconcile(children)

    async def _expire_session(self):
        # Expiry may already be queued when the session comes up
        if self._established or not self._running:
            self._log.debug("Session deadline passed after the session was settled")
            return
        self.failure = SessionTimeoutError(self.coordination.servers, self.guard.deadline)
        await self.coordination.close()

    def _on_children_fired(self, event: WatchEvent):
        self._log.info(f"Zookeeper getChildren event emit: {event.type.value} on {event.path}")
        self.state.mark_watch_fired()

    def _on_proxy_fired(self, event: WatchEvent):
        self._log.info(f"Zookeeper getData event emit: {event.type.value} on {event.path}")
        self.state.mark_watch_fired()

    async def reconcile(self, children: List[str]):
        """
        Apply one listing of the proxy directory as a batch.

        Removals are applied and announced first. Additions are then fetched
        and connected concurrently; the batch event is published once all
        of them have finished, whatever order they finish in.
        """
        if not self._running:
            return

        async with self._batch_lock:
            if not self._running:
                return

            to_add, to_remove = diff_membership(self._last_proxies, children)
            self._last_proxies = list(children)
            first_batch = not self.state.has_connected

            self._log.debug(
                f"Reconciling {len(children)} proxies: +{len(to_add)} -{len(to_remove)}"
            )

            for proxy_id in to_remove:
                self._log.info(f"Codis client disconnect from proxy: {proxy_id}")
                subscription = self._data_watches.pop(proxy_id, None)
                if subscription is not None:
                    subscription.cancel()
                await self.pool.remove(proxy_id)
                self._publish(self.state.removal_event())

            if not to_add and not first_batch:
                return

            results = await asyncio.gather(
                *(self._add_proxy(proxy_id) for proxy_id in to_add),
                return_exceptions=True,
            )

            # Pool only changes once every addition has finished
            for proxy_id, result in zip(to_add, results):
                if isinstance(result, BaseException):
                    self._log.error(f"Adding proxy {proxy_id} failed: {result!r}")
                elif result is not None:
                    handle, detail = result
                    await self.pool.add(proxy_id, handle, detail)

            self._publish(self.state.complete_batch())
            self._settled.set()

    async def _add_proxy(self, proxy_id: str) -> Optional[Tuple[CacheClient, ProxyDetail]]:
        """Watch a new proxy node and connect to it, without pooling the client."""
        previous = self._data_watches.pop(proxy_id, None)
        if previous is not None:
            previous.cancel()

        subscription = WatchSubscription(
            self.coordination.get_data,
            self._proxy_path(proxy_id),
            on_result=functools.partial(self._on_proxy_changed, proxy_id),
            on_fire=self._on_proxy_fired,
            rearm_on=lambda event: event.type == WatchEventType.DATA_CHANGED,
            log=self._log,
        )
        self._data_watches[proxy_id] = subscription

        try:
            raw = await subscription.start()
        except Exception as e:
            self._log.warning(f"Zookeeper getData error in {subscription.path}: {e}")
            return None

        return await self._connect_proxy(proxy_id, raw)

    async def _on_proxy_changed(self, proxy_id: str, raw: bytes):
        """Rebuild a proxy's client after its node data changed."""
        async with self._batch_lock:
            if not self._running or proxy_id not in self._last_proxies:
                return

            connected = await self._connect_proxy(proxy_id, raw)
            if connected is None:
                # Stale detail is worse than no entry
                await self.pool.remove(proxy_id)
            else:
                handle, detail = connected
                await self.pool.add(proxy_id, handle, detail)

            self._publish(self.state.complete_batch())

    async def _connect_proxy(
        self, proxy_id: str, raw: bytes
    ) -> Optional[Tuple[CacheClient, ProxyDetail]]:
        """Decode a proxy payload and connect to it."""
        try:
            detail = ProxyDetail.from_payload(proxy_id, raw, self.proxy_address_key)
            handle = await self.factory.create(proxy_id, detail.address)
        except Exception as e:
            self._log.warning(f"Connect codis failed for proxy {proxy_id}: {e}")
            return None

        return handle, detail

    def _publish(self, event: str):
        client = self.pool.random_client()
        error = None if client is not None else PoolEmptyError()
        self.current_client = client
        self.events.publish(event, error, client)

    def _proxy_path(self, proxy_id: str) -> str:
        if self.proxy_dir == "/":
            return f"/{proxy_id}"
        return f"{self.proxy_dir}/{proxy_id}"
