"""Pool of live Codis proxy clients keyed by proxy id."""

import logging
import random
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Mapping, Optional, Union

from codispool.pool.factory import CacheClient, release
from codispool.protocol.models import ProxyDetail

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PoolEntry:
    """One connected proxy: its handle and the detail it was built from."""
    handle: CacheClient
    detail: ProxyDetail

    @property
    def client(self) -> Any:
        """The underlying redis client."""
        return self.handle.client


class ConnectionPool:
    """
    Mapping from proxy id to a connected client.

    The pool owns every handle it holds: a handle is only closed by
    removing or replacing its entry. All mutations happen on the event
    loop that runs the reconciliation, so no lock is taken here.
    """

    def __init__(self, log: Optional[logging.Logger] = None, rng: Optional[random.Random] = None):
        """
        Initialize ConnectionPool.

        Args:
            log: Logger for pool diagnostics
            rng: Random source for client selection (tests pass a seeded one)
        """
        self._entries: Dict[str, PoolEntry] = {}
        self._log = log or logger
        self._rng = rng or random.Random()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, proxy_id: object) -> bool:
        return proxy_id in self._entries

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._entries))

    def keys(self) -> List[str]:
        """Proxy ids currently in the pool."""
        return list(self._entries)

    def get(self, proxy_id: str) -> Optional[PoolEntry]:
        """Get the entry for a proxy, or None."""
        return self._entries.get(proxy_id)

    def entries(self) -> Dict[str, PoolEntry]:
        """Snapshot of the pool contents."""
        return dict(self._entries)

    async def add(self, proxy_id: str, handle: CacheClient, detail: ProxyDetail):
        """
        Insert or replace the entry for a proxy.

        A replaced handle is closed; connectivity of the new handle is the
        factory's concern.
        """
        previous = self._entries.get(proxy_id)
        self._entries[proxy_id] = PoolEntry(handle=handle, detail=detail)
        self._log.debug(f"Pool added proxy {proxy_id} @{detail.address}")

        if previous is not None and previous.handle is not handle:
            await release(previous.handle, self._log)

    async def remove(self, proxy_id: str) -> bool:
        """
        Remove a proxy and close its client.

        Close failures are logged and swallowed, the entry is always
        dropped.

        Returns:
            True if the proxy was in the pool
        """
        entry = self._entries.pop(proxy_id, None)
        if entry is None:
            return False

        await release(entry.handle, self._log)
        self._log.debug(f"Pool removed proxy {proxy_id}")
        return True

    def random_entry(self) -> Optional[PoolEntry]:
        """Pick an entry uniformly at random, or None if empty."""
        if not self._entries:
            return None
        return self._entries[self._rng.choice(list(self._entries))]

    def random_client(self) -> Optional[Any]:
        """Pick a client uniformly at random, or None if empty."""
        entry = self.random_entry()
        return entry.client if entry is not None else None

    @staticmethod
    def get_random_client(
        pool: Union["ConnectionPool", Mapping[str, PoolEntry]],
        rng: Optional[random.Random] = None,
    ) -> Optional[Any]:
        """
        Pick a random client from any pool snapshot.

        Args:
            pool: A ConnectionPool or a mapping of proxy id to PoolEntry
            rng: Optional random source

        Returns:
            The redis client of a random entry, or None if there are none
        """
        entries = pool.entries() if isinstance(pool, ConnectionPool) else pool
        if not entries:
            return None
        proxy_id = (rng or random).choice(list(entries))
        return entries[proxy_id].client
