"""Persistent watches built from single-fire ZooKeeper watches."""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Set

from codispool.discovery.coordination import WatchCallback, WatchEvent

logger = logging.getLogger(__name__)

Fetch = Callable[[str, WatchCallback], Awaitable[Any]]


class WatchSubscription:
    """
    Keeps observing a path by re-installing its watch after every fire.

    ``start()`` installs the first watch and returns the first result to
    the caller. Each accepted fire re-installs the watch (fetching fresh
    data in the same request) before ``on_result`` is called with that
    data. Results are delivered in fetch order; a result overtaken by a
    newer one is dropped.
    """

    def __init__(
        self,
        fetch: Fetch,
        path: str,
        on_result: Callable[[Any], Awaitable[None]],
        on_fire: Optional[Callable[[WatchEvent], None]] = None,
        rearm_on: Optional[Callable[[WatchEvent], bool]] = None,
        log: Optional[logging.Logger] = None,
    ):
        """
        Initialize WatchSubscription.

        Args:
            fetch: Coordination call that reads the path and installs a watch
            path: Path to observe
            on_result: Coroutine receiving the data of every re-arm
            on_fire: Called for every accepted fire, before re-arming
            rearm_on: Predicate deciding which fires to follow (default: all)
            log: Logger for watch diagnostics
        """
        self.path = path
        self._fetch = fetch
        self._on_result = on_result
        self._on_fire = on_fire
        self._rearm_on = rearm_on
        self._log = log or logger

        self._active = False
        self._generation = 0
        self._delivered = 0
        self._deliver_lock: Optional[asyncio.Lock] = None
        self._tasks: Set[asyncio.Task] = set()

    @property
    def active(self) -> bool:
        """True while a watch is installed and not cancelled."""
        return self._active

    async def start(self) -> Any:
        """
        Install the first watch.

        Returns:
            The data read together with the watch

        Raises:
            Exception: Whatever the fetch raised; the subscription stays inactive
        """
        if self._deliver_lock is None:
            self._deliver_lock = asyncio.Lock()
        self._active = True
        self._generation += 1
        self._delivered = self._generation
        try:
            return await self._fetch(self.path, self._fired)
        except Exception:
            self._active = False
            raise

    def cancel(self):
        """Stop following fires. Pending re-arms are cancelled."""
        self._active = False
        for task in list(self._tasks):
            task.cancel()

    def _fired(self, event: WatchEvent):
        if not self._active:
            return

        self._log.debug(f"Watch fired on {self.path}: {event.type.value}")

        if self._rearm_on is not None and not self._rearm_on(event):
            self._active = False
            return

        if self._on_fire is not None:
            self._on_fire(event)

        task = asyncio.get_running_loop().create_task(self._rearm())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _rearm(self):
        self._generation += 1
        generation = self._generation

        try:
            result = await self._fetch(self.path, self._fired)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._log.error(f"Re-arming watch on {self.path} failed: {e}")
            if generation == self._generation:
                self._active = False
            return

        async with self._deliver_lock:
            if not self._active or generation < self._delivered:
                return
            self._delivered = generation
            try:
                await self._on_result(result)
            except Exception as e:
                self._log.error(f"Handling watch result for {self.path} failed: {e}")
