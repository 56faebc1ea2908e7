#!/usr/bin/env python3
"""Follow the Codis proxies registered in ZooKeeper and show pool events."""

import argparse
import asyncio
import logging
import signal
from typing import Set

from rich.console import Console
from rich.table import Table

from codispool import CodisPool, PoolConfig
from codispool.exceptions import ConfigurationError

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

console = Console()


def render_pool(pool: CodisPool, event: str, error) -> Table:
    """Build a table of the pool contents for one event."""
    title = f"{event} ({len(pool.client_pool)} proxies)"
    if error is not None:
        title += f" - {error}"

    table = Table(title=title)
    table.add_column("Proxy")
    table.add_column("Address")
    table.add_column("Hostname")
    table.add_column("Client")

    for proxy_id, entry in sorted(pool.client_pool.entries().items()):
        table.add_row(
            proxy_id,
            entry.detail.address,
            str(entry.detail.payload.get("hostname", "-")),
            repr(entry.handle),
        )
    return table


async def run_pool(config: PoolConfig, ping: bool):
    """Run the pool until a shutdown signal arrives."""
    pool = CodisPool(config)
    ping_tasks: Set[asyncio.Task] = set()

    def make_handler(event: str):
        def handler(error, client):
            console.print(render_pool(pool, event, error))
            if ping and client is not None:
                task = asyncio.create_task(ping_client(client))
                ping_tasks.add(task)
                task.add_done_callback(ping_tasks.discard)
        return handler

    pool.on("connected", make_handler("connected"))
    pool.on("reconnected", make_handler("reconnected"))

    shutdown_event = asyncio.Event()

    def handle_shutdown():
        logger.info("Shutdown signal received")
        shutdown_event.set()

    loop = asyncio.get_event_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_shutdown)

    try:
        await pool.start()

        if not await pool.wait_until_connected(timeout=config.session_deadline + 5):
            logger.error(f"Pool did not connect: {pool.failure}")
            return

        await shutdown_event.wait()

    finally:
        for task in list(ping_tasks):
            task.cancel()
        await pool.stop()


async def ping_client(client):
    """PING the selected proxy once; works for both client variants."""
    try:
        reply = client.ping()
        if asyncio.iscoroutine(reply):
            reply = await reply
        logger.info(f"PING -> {reply}")
    except Exception as e:
        logger.warning(f"PING failed: {e}")


def main():
    parser = argparse.ArgumentParser(
        description="Watch Codis proxies through ZooKeeper"
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to YAML config file",
    )
    parser.add_argument(
        "--zk-servers",
        type=str,
        default=None,
        help="ZooKeeper connect string (overrides config)",
    )
    parser.add_argument(
        "--proxy-dir",
        type=str,
        default=None,
        help="ZooKeeper directory of the proxies (overrides config)",
    )
    parser.add_argument(
        "--password",
        type=str,
        default=None,
        help="Codis password",
    )
    parser.add_argument(
        "--variant",
        type=str,
        default=None,
        choices=["redis-asyncio", "redis"],
        help="Redis client variant",
    )
    parser.add_argument(
        "--ping",
        action="store_true",
        help="PING the selected client after every event",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level",
    )

    args = parser.parse_args()

    logging.getLogger().setLevel(getattr(logging, args.log_level))

    overrides = {
        "zk_servers": args.zk_servers,
        "zk_proxy_dir": args.proxy_dir,
        "codis_password": args.password,
        "client_variant": args.variant,
    }

    try:
        if args.config:
            config = PoolConfig.from_yaml(args.config, overrides=overrides)
        else:
            config = PoolConfig.from_dict(
                {k: v for k, v in overrides.items() if v is not None}
            )
    except ConfigurationError as e:
        parser.error(str(e))

    logger.info(f"Watching {config.zk_proxy_dir} on {config.zk_servers}")

    asyncio.run(run_pool(config, ping=args.ping))


if __name__ == "__main__":
    main()
