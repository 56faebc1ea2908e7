"""Deadline for establishing the ZooKeeper session."""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class TimeoutGuard:
    """
    Fires once if the session is not established before a deadline.

    Some coordination clients keep retrying forever without reporting
    failure; the guard bounds that by running ``on_expire`` (which closes
    the session) when the deadline passes.
    """

    def __init__(
        self,
        deadline: float,
        on_expire: Callable[[], Awaitable[None]],
        log: Optional[logging.Logger] = None,
    ):
        """
        Initialize TimeoutGuard.

        Args:
            deadline: Seconds to wait for the session
            on_expire: Coroutine function run when the deadline passes
            log: Logger for diagnostics
        """
        self.deadline = deadline
        self._on_expire = on_expire
        self._log = log or logger

        self._handle: Optional[asyncio.TimerHandle] = None
        self._task: Optional[asyncio.Task] = None
        self._expired = False

    @property
    def expired(self) -> bool:
        return self._expired

    @property
    def armed(self) -> bool:
        return self._handle is not None

    def start(self):
        """Arm the timer on the running loop."""
        if self._handle is not None or self._expired:
            return
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self.deadline, self._expire)

    def cancel(self):
        """Disarm the timer; the guard never fires afterwards."""
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    async def wait(self):
        """Wait for the expiry action, if the guard fired."""
        if self._task is not None:
            await self._task

    def _expire(self):
        self._handle = None
        self._expired = True
        self._log.error(
            f"ZooKeeper session not established within {self.deadline:.1f}s, closing it"
        )
        self._task = asyncio.get_running_loop().create_task(self._run_expire())

    async def _run_expire(self):
        try:
            await self._on_expire()
        except Exception as e:
            self._log.error(f"Closing timed out ZooKeeper session failed: {e}")
