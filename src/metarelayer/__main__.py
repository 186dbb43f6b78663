import argparse
import asyncio
import json
import logging
import os
import sys

import uvicorn

from metarelayer.config import load_config
from metarelayer.errors import ConfigurationError
from metarelayer.logging_config import setup_logging
from metarelayer.relayer import MetaRelayer

log = logging.getLogger("metarelayer")


def parse_args(argv=None):
    parser = argparse.ArgumentParser(prog="metarelayer", description="Rotating-signer meta-transaction relayer")
    parser.add_argument("-c", "--config",
                        help="Path to a config.toml (default: RELAYER_CONFIG or the packaged one)",
                        )
    parser.add_argument("-l", "--log-level",
                        help="Log level for the relayer's own loggers (default: LOG_LEVEL or INFO)",
                        )
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("serve", help="Run the HTTP intake (default)")
    sub.add_parser("rebalance", help="Run one rebalancing pass and print the report")
    return parser.parse_args(argv)


async def _rebalance_once(config) -> int:
    relayer = MetaRelayer.from_config(config)
    try:
        report = await relayer.rebalancer.run()
    finally:
        await relayer.aclose()
    print(json.dumps(report.to_dict(), indent=2))
    return 1 if report.failed else 0


def main(argv=None) -> int:
    args = parse_args(argv)
    if args.log_level:
        os.environ["LOG_LEVEL"] = args.log_level
    setup_logging()

    try:
        config = load_config(args.config)
        if args.command == "rebalance":
            return asyncio.run(_rebalance_once(config))
    except ConfigurationError as e:
        log.error("Configuration error: %s", e)
        return 2

    if args.config:
        # The app builds its own relayer at startup and finds the file through here.
        os.environ["RELAYER_CONFIG"] = args.config
    uvicorn.run("metarelayer.app:app", host=config.host, port=config.port, lifespan="on")
    return 0


if __name__ == "__main__":
    sys.exit(main())
