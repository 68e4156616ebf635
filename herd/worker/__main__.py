"""
Entry point for the default worker process.

Usage: python -m herd.worker <fd>

Serves the status application on the listening socket passed down by the
master and shuts down gracefully on SIGTERM/SIGINT.
"""
import os
import sys
import signal
import asyncio
import logging
from typing import List

import setproctitle
from hypercorn.asyncio import serve
from hypercorn.config import Config

from herd.log import setup_logging
from herd.worker.app import SLOT_ID, app

log = logging.getLogger("worker")


async def _serve(config: Config) -> None:
    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, shutdown_event.set)
    await serve(app, config, shutdown_trigger=shutdown_event.wait)


def main(argv: List[str]) -> int:
    if len(argv) != 1 or not argv[0].isdigit():
        print("Usage: python -m herd.worker <fd>", file=sys.stderr)
        return 2

    setup_logging(logging.INFO)
    config = Config()
    config.bind = [f"fd://{argv[0]}"]
    config.graceful_timeout = 5

    log.info(f"Worker {os.getpid()} (slot {SLOT_ID}) serving on fd {argv[0]}")
    asyncio.run(_serve(config))
    log.info(f"Worker {os.getpid()} stopped")
    return 0


if __name__ == "__main__":
    setproctitle.setproctitle(f"herd - worker {SLOT_ID}")
    sys.exit(main(sys.argv[1:]))
