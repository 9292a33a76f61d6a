from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from typing import Any, Dict

from bvrelay.config import load_config
from bvrelay.server.runtime import RelayRuntime

log = logging.getLogger("bvrelay.cmd.server")


async def _run(config: Dict[str, Any]) -> None:
    runtime = RelayRuntime(config)
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    try:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)
    except NotImplementedError:
        pass

    try:
        await runtime.start()
        log.info("Relay running. Press Ctrl+C to stop.")
        await stop_event.wait()
    finally:
        await runtime.stop()


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="BlockVault signaling relay")
    parser.add_argument("--config", help="Path to relay YAML config")
    parser.add_argument("--listen", help="Override listen address (host:port)")
    args = parser.parse_args(argv)

    config = load_config(args.config)
    if args.listen:
        config["listen"] = args.listen

    logging.basicConfig(
        level=str(config["log_level"]).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        asyncio.run(_run(config))
    except KeyboardInterrupt:
        log.info("Relay stopped manually")


if __name__ == "__main__":
    main()
