"""Tests for the discovery loop and the CodisPool facade."""

import asyncio
import json
import logging

import pytest

from codispool.client import CodisPool
from codispool.config import PoolConfig
from codispool.discovery.coordination import CoordinationClient, WatchEvent, WatchEventType
from codispool.exceptions import CoordinationError, PoolEmptyError, SessionTimeoutError
from codispool.state import ConnectionState

ROOT = "/jodis/codis-demo"


class MockCoordination(CoordinationClient):
    """In-memory ZooKeeper with single-fire watches and gated reads."""

    def __init__(self, hang: bool = False):
        self.servers = "zk-test:2181"
        self.hang = hang
        self.children = {ROOT: []}
        self.data = {}
        self.child_watches = {}
        self.data_watches = {}
        self.gates = {}
        self.closed = False
        self._pending = None

    async def start(self):
        if self.hang:
            self._pending = asyncio.get_running_loop().create_future()
            await self._pending

    async def get_children(self, path, watch):
        if path not in self.children:
            raise CoordinationError("NoNodeError", path=path)
        self.child_watches.setdefault(path, []).append(watch)
        return list(self.children[path])

    async def get_data(self, path, watch):
        if path not in self.data:
            raise CoordinationError("NoNodeError", path=path)
        self.data_watches.setdefault(path, []).append(watch)
        gate = self.gates.get(path)
        if gate is not None:
            await gate.wait()
        return self.data[path]

    async def close(self):
        self.closed = True
        if self._pending is not None and not self._pending.done():
            self._pending.set_exception(CoordinationError("session closed"))

    # -- test controls ------------------------------------------------

    def register(self, name, addr=None, raw=None, fire=True):
        path = f"{ROOT}/{name}"
        if raw is None:
            raw = json.dumps({"addr": addr, "hostname": name}).encode()
        self.data[path] = raw
        self.children[ROOT].append(name)
        if fire:
            self.fire(self.child_watches, ROOT, WatchEventType.CHILDREN_CHANGED)

    def unregister(self, name):
        path = f"{ROOT}/{name}"
        self.children[ROOT].remove(name)
        self.data.pop(path, None)
        self.fire(self.data_watches, path, WatchEventType.DELETED)
        self.fire(self.child_watches, ROOT, WatchEventType.CHILDREN_CHANGED)

    def update(self, name, addr):
        path = f"{ROOT}/{name}"
        self.data[path] = json.dumps({"addr": addr, "hostname": name}).encode()
        self.fire(self.data_watches, path, WatchEventType.DATA_CHANGED)

    def gate(self, name) -> asyncio.Event:
        event = asyncio.Event()
        self.gates[f"{ROOT}/{name}"] = event
        return event

    def fire(self, watches, path, kind):
        for watch in watches.pop(path, []):
            watch(WatchEvent(type=kind, path=path))


class MockRedis:
    def __init__(self, proxy_id, address):
        self.proxy_id = proxy_id
        self.address = address


class MockHandle:
    def __init__(self, proxy_id, address, fail_close=False):
        self.proxy_id = proxy_id
        self.address = address
        self.client = MockRedis(proxy_id, address)
        self.fail_close = fail_close
        self.closed = False

    async def close(self):
        self.closed = True
        if self.fail_close:
            raise ConnectionError("quit failed")


class MockFactory:
    """Connection factory that never touches the network."""

    def __init__(self):
        self.created = []
        self.unreachable = set()
        self.fail_close = set()

    async def create(self, proxy_id, address):
        if address in self.unreachable:
            raise ConnectionError(f"{address} refused connection")
        handle = MockHandle(proxy_id, address, fail_close=address in self.fail_close)
        self.created.append(handle)
        return handle

    def handle_for(self, proxy_id):
        return [h for h in self.created if h.proxy_id == proxy_id][-1]


class EventRecorder:
    def __init__(self):
        self.events = []

    def handler(self, name):
        return lambda error, client: self.events.append((name, error, client))

    def names(self):
        return [name for name, _, _ in self.events]


async def wait_until(predicate, timeout=1.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


def make_pool(coordination, factory, **overrides):
    options = {"zk_servers": "zk-test:2181", "zk_proxy_dir": ROOT, "log": False}
    options.update(overrides)
    pool = CodisPool(PoolConfig(**options), coordination=coordination, factory=factory)
    recorder = EventRecorder()
    pool.on("connected", recorder.handler("connected"))
    pool.on("reconnected", recorder.handler("reconnected"))
    return pool, recorder


class TestInitialDiscovery:
    """First batch behaviour."""

    @pytest.mark.asyncio
    async def test_connects_to_all_proxies(self):
        coordination = MockCoordination()
        coordination.register("p1", "10.0.0.1:19000", fire=False)
        coordination.register("p2", "10.0.0.2:19000", fire=False)
        factory = MockFactory()
        pool, recorder = make_pool(coordination, factory)

        await pool.start()
        assert await pool.wait_until_connected(timeout=1.0)

        assert sorted(pool.client_pool.keys()) == ["p1", "p2"]
        assert len(recorder.events) == 1
        name, error, client = recorder.events[0]
        assert name == "connected"
        assert error is None
        assert client in {h.client for h in factory.created}
        assert pool.current_client is client
        assert pool.state == ConnectionState.CONNECTED
        assert pool.client_pool.get("p1").detail.address == "10.0.0.1:19000"

        await pool.stop()

    @pytest.mark.asyncio
    async def test_empty_directory_still_connects(self):
        coordination = MockCoordination()
        pool, recorder = make_pool(coordination, MockFactory())

        await pool.start()
        assert await pool.wait_until_connected(timeout=1.0)

        name, error, client = recorder.events[0]
        assert name == "connected"
        assert isinstance(error, PoolEmptyError)
        assert client is None

        await pool.stop()

    @pytest.mark.asyncio
    async def test_malformed_payload_skipped(self):
        coordination = MockCoordination()
        coordination.register("p1", "10.0.0.1:19000", fire=False)
        coordination.register("p2", raw=b"{not json", fire=False)
        pool, recorder = make_pool(coordination, MockFactory())

        await pool.start()
        assert await pool.wait_until_connected(timeout=1.0)

        assert pool.client_pool.keys() == ["p1"]
        assert recorder.names() == ["connected"]
        assert recorder.events[0][1] is None

        await pool.stop()

    @pytest.mark.asyncio
    async def test_unreachable_proxy_skipped(self):
        coordination = MockCoordination()
        coordination.register("p1", "10.0.0.1:19000", fire=False)
        coordination.register("p2", "10.0.0.2:19000", fire=False)
        factory = MockFactory()
        factory.unreachable.add("10.0.0.2:19000")
        pool, recorder = make_pool(coordination, factory)

        await pool.start()
        assert await pool.wait_until_connected(timeout=1.0)

        assert pool.client_pool.keys() == ["p1"]
        assert recorder.names() == ["connected"]

        await pool.stop()

    @pytest.mark.asyncio
    async def test_custom_address_key(self):
        coordination = MockCoordination()
        coordination.register("p1", raw=json.dumps({"proxy_addr": "10.0.0.7:19000"}).encode(), fire=False)
        factory = MockFactory()
        pool, recorder = make_pool(coordination, factory, proxy_address_key="proxy_addr")

        await pool.start()
        assert await pool.wait_until_connected(timeout=1.0)

        assert factory.handle_for("p1").address == "10.0.0.7:19000"

        await pool.stop()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("order", [(0, 1, 2), (2, 1, 0), (1, 2, 0), (2, 0, 1)])
    async def test_one_event_for_any_completion_order(self, order):
        """The batch event waits for every fetch, including the one issued first."""
        coordination = MockCoordination()
        names = ["p1", "p2", "p3"]
        gates = []
        for i, name in enumerate(names):
            coordination.register(name, f"10.0.0.{i + 1}:19000", fire=False)
            gates.append(coordination.gate(name))
        pool, recorder = make_pool(coordination, MockFactory())

        await pool.start()
        await wait_until(lambda: len(coordination.data_watches) == 3)

        for index in order[:-1]:
            gates[index].set()
            await asyncio.sleep(0.01)
            assert recorder.events == []

        gates[order[-1]].set()
        assert await pool.wait_until_connected(timeout=1.0)
        await asyncio.sleep(0.01)

        assert recorder.names() == ["connected"]
        assert sorted(pool.client_pool.keys()) == names

        await pool.stop()

    @pytest.mark.asyncio
    async def test_pool_unchanged_until_batch_event(self):
        """Finished additions stay out of the pool while the batch is running."""
        coordination = MockCoordination()
        coordination.register("p1", "10.0.0.1:19000", fire=False)
        coordination.register("p2", "10.0.0.2:19000", fire=False)
        gate = coordination.gate("p2")
        factory = MockFactory()
        pool, recorder = make_pool(coordination, factory)

        await pool.start()
        await wait_until(lambda: len(factory.created) == 1)
        await asyncio.sleep(0.01)

        assert recorder.events == []
        assert pool.client_pool.keys() == []
        assert pool.random_client() is None

        gate.set()
        assert await pool.wait_until_connected(timeout=1.0)

        assert recorder.names() == ["connected"]
        assert sorted(pool.client_pool.keys()) == ["p1", "p2"]

        await pool.stop()

    @pytest.mark.asyncio
    async def test_missing_directory_stops_discovery(self):
        coordination = MockCoordination()
        del coordination.children[ROOT]
        pool, recorder = make_pool(coordination, MockFactory())

        await pool.start()

        assert not await pool.wait_until_connected(timeout=1.0)
        assert pool.failure is not None
        assert recorder.events == []

        await pool.stop()


class TestMembershipChanges:
    """Batches driven by watch fires."""

    async def connected_pool(self, *proxies, factory=None):
        coordination = MockCoordination()
        for i, name in enumerate(proxies):
            coordination.register(name, f"10.0.0.{i + 1}:19000", fire=False)
        factory = factory or MockFactory()
        pool, recorder = make_pool(coordination, factory)
        await pool.start()
        assert await pool.wait_until_connected(timeout=1.0)
        return coordination, factory, pool, recorder

    @pytest.mark.asyncio
    async def test_removed_proxy_closed(self):
        coordination, factory, pool, recorder = await self.connected_pool("p1", "p2")
        p1 = factory.handle_for("p1")
        p2 = factory.handle_for("p2")

        coordination.unregister("p2")
        await wait_until(lambda: len(recorder.events) == 2)
        await asyncio.sleep(0.02)

        assert recorder.names() == ["connected", "reconnected"]
        _, error, client = recorder.events[1]
        assert error is None
        assert client is p1.client
        assert p2.closed
        assert not p1.closed
        assert pool.client_pool.keys() == ["p1"]

        await pool.stop()

    @pytest.mark.asyncio
    async def test_last_proxy_removed(self):
        coordination, factory, pool, recorder = await self.connected_pool("p1")

        coordination.unregister("p1")
        await wait_until(lambda: len(recorder.events) == 2)

        name, error, client = recorder.events[1]
        assert name == "reconnected"
        assert isinstance(error, PoolEmptyError)
        assert client is None
        assert len(pool.client_pool) == 0
        assert pool.current_client is None

        await pool.stop()

    @pytest.mark.asyncio
    async def test_close_failure_does_not_block_removal(self):
        factory = MockFactory()
        factory.fail_close.add("10.0.0.2:19000")
        coordination, factory, pool, recorder = await self.connected_pool("p1", "p2", factory=factory)

        coordination.unregister("p2")
        await wait_until(lambda: len(recorder.events) == 2)

        assert pool.client_pool.keys() == ["p1"]
        assert recorder.events[1][1] is None

        await pool.stop()

    @pytest.mark.asyncio
    async def test_added_proxy_reconnects(self):
        coordination, factory, pool, recorder = await self.connected_pool("p1")

        coordination.register("p2", "10.0.0.2:19000")
        await wait_until(lambda: len(recorder.events) == 2)

        assert recorder.names() == ["connected", "reconnected"]
        assert sorted(pool.client_pool.keys()) == ["p1", "p2"]
        assert pool.state == ConnectionState.RECONNECTED

        coordination.register("p3", "10.0.0.3:19000")
        await wait_until(lambda: len(recorder.events) == 3)

        assert recorder.names() == ["connected", "reconnected", "reconnected"]

        await pool.stop()

    @pytest.mark.asyncio
    async def test_removals_announced_before_batch_event(self):
        coordination, factory, pool, recorder = await self.connected_pool("p1", "p2")

        # One listing that drops p1 and p2 and adds p3
        for name in ("p1", "p2"):
            coordination.children[ROOT].remove(name)
            coordination.data.pop(f"{ROOT}/{name}")
        coordination.register("p3", "10.0.0.3:19000")
        await wait_until(lambda: len(recorder.events) == 4)

        assert recorder.names() == ["connected", "reconnected", "reconnected", "reconnected"]
        # p1 removal leaves p2, p2 removal empties the pool, then p3 arrives
        assert recorder.events[1][1] is None
        assert isinstance(recorder.events[2][1], PoolEmptyError)
        assert recorder.events[3][1] is None
        assert recorder.events[3][2] is factory.handle_for("p3").client
        assert pool.client_pool.keys() == ["p3"]

        await pool.stop()

    @pytest.mark.asyncio
    async def test_data_change_rebuilds_client(self):
        coordination, factory, pool, recorder = await self.connected_pool("p1")
        old = factory.handle_for("p1")

        coordination.update("p1", "10.0.0.9:19000")
        await wait_until(lambda: len(recorder.events) == 2)

        new = factory.handle_for("p1")
        assert new is not old
        assert old.closed
        assert pool.client_pool.get("p1").detail.address == "10.0.0.9:19000"
        assert recorder.names() == ["connected", "reconnected"]

        # The data watch was re-armed
        coordination.update("p1", "10.0.0.10:19000")
        await wait_until(lambda: len(recorder.events) == 3)
        assert pool.client_pool.get("p1").detail.address == "10.0.0.10:19000"

        await pool.stop()

    @pytest.mark.asyncio
    async def test_data_change_to_bad_payload_drops_entry(self):
        coordination, factory, pool, recorder = await self.connected_pool("p1", "p2")

        path = f"{ROOT}/p2"
        coordination.data[path] = b"garbage"
        coordination.fire(coordination.data_watches, path, WatchEventType.DATA_CHANGED)
        await wait_until(lambda: len(recorder.events) == 2)

        assert pool.client_pool.keys() == ["p1"]
        assert factory.handle_for("p2").closed

        await pool.stop()

    @pytest.mark.asyncio
    async def test_watch_during_first_batch(self):
        """A listing change while the first batch runs yields connected, then reconnected."""
        coordination = MockCoordination()
        coordination.register("p1", "10.0.0.1:19000", fire=False)
        gate = coordination.gate("p1")
        pool, recorder = make_pool(coordination, MockFactory())

        await pool.start()
        await wait_until(lambda: len(coordination.data_watches) == 1)
        coordination.register("p2", "10.0.0.2:19000")
        await asyncio.sleep(0.01)
        gate.set()

        await wait_until(lambda: len(recorder.events) == 2)
        assert recorder.names() == ["connected", "reconnected"]
        assert sorted(pool.client_pool.keys()) == ["p1", "p2"]

        await pool.stop()


class TestSessionTimeout:
    """Session that never establishes."""

    @pytest.mark.asyncio
    async def test_session_closed_after_deadline(self):
        coordination = MockCoordination(hang=True)
        coordination.register("p1", "10.0.0.1:19000", fire=False)
        pool, recorder = make_pool(
            coordination,
            MockFactory(),
            session_timeout=0.05,
            connection_retries=1,
        )

        await pool.start()

        assert not await pool.wait_until_connected(timeout=1.0)
        assert coordination.closed
        assert isinstance(pool.failure, SessionTimeoutError)
        assert recorder.events == []
        assert len(pool.client_pool) == 0

        await pool.stop()

    @pytest.mark.asyncio
    async def test_late_expiry_keeps_established_session(self):
        """An expiry that runs after the session came up leaves it open."""
        coordination = MockCoordination()
        coordination.register("p1", "10.0.0.1:19000", fire=False)
        pool, recorder = make_pool(coordination, MockFactory())

        await pool.start()
        assert await pool.wait_until_connected(timeout=1.0)

        await pool.watcher._expire_session()

        assert not coordination.closed
        assert pool.failure is None
        assert pool.client_pool.keys() == ["p1"]

        await pool.stop()


class TestFacade:
    """CodisPool surface."""

    def test_missing_config(self):
        from codispool.exceptions import ConfigurationError

        with pytest.raises(ConfigurationError):
            CodisPool(None)
        with pytest.raises(ConfigurationError):
            CodisPool({"zk_servers": "zk-test:2181"})

    def test_dict_config(self):
        pool = CodisPool(
            {"zk_servers": "zk-test:2181", "zk_proxy_dir": ROOT, "log": False},
            coordination=MockCoordination(),
            factory=MockFactory(),
        )

        assert pool.state == ConnectionState.DISCONNECTED
        assert pool.current_client is None
        assert pool.random_client() is None

    @pytest.mark.asyncio
    async def test_stop_releases_everything(self):
        coordination = MockCoordination()
        coordination.register("p1", "10.0.0.1:19000", fire=False)
        coordination.register("p2", "10.0.0.2:19000", fire=False)
        factory = MockFactory()
        pool, recorder = make_pool(coordination, factory)
        await pool.start()
        assert await pool.wait_until_connected(timeout=1.0)

        await pool.stop()

        assert coordination.closed
        assert all(h.closed for h in factory.created)
        assert len(pool.client_pool) == 0

    @pytest.mark.asyncio
    async def test_static_random_client(self):
        coordination = MockCoordination()
        coordination.register("p1", "10.0.0.1:19000", fire=False)
        factory = MockFactory()
        pool, recorder = make_pool(coordination, factory)
        await pool.start()
        assert await pool.wait_until_connected(timeout=1.0)

        client = CodisPool.get_random_client(pool.client_pool)

        assert client is factory.handle_for("p1").client
        assert CodisPool.get_random_client({}) is None

        await pool.stop()

    @pytest.mark.asyncio
    async def test_callable_log_sink(self):
        lines = []
        coordination = MockCoordination()
        coordination.register("p1", "10.0.0.1:19000", fire=False)
        pool, recorder = make_pool(coordination, MockFactory(), log=lines.append)

        await pool.start()
        assert await pool.wait_until_connected(timeout=1.0)
        await pool.stop()

        assert any("p1" in line or "Codis pool" in line for line in lines)

    def test_print_reply(self, caplog):
        with caplog.at_level(logging.INFO, logger="codispool.client"):
            CodisPool.print_reply(None, "PONG")
            CodisPool.print_reply(PoolEmptyError(), None)

        records = [(r.levelno, r.getMessage()) for r in caplog.records]
        assert (logging.INFO, "Reply: PONG") in records
        assert (logging.ERROR, "Error: Codis client pool is empty.") in records

    def test_built_outside_event_loop(self):
        """A pool constructed before asyncio.run still works on the run loop."""
        coordination = MockCoordination()
        coordination.register("p1", "10.0.0.1:19000", fire=False)
        pool, recorder = make_pool(coordination, MockFactory())

        async def run():
            await pool.start()
            connected = await pool.wait_until_connected(timeout=1.0)
            await pool.watcher.reconcile(["p1"])
            await pool.stop()
            return connected

        assert asyncio.run(run())
        assert recorder.names() == ["connected"]
