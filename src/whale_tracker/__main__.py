"""Command-line entry point: ``python -m whale_tracker`` / ``whale-tracker``."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import signal
import sys

from pydantic import ValidationError

from whale_tracker import __version__
from whale_tracker.config import Settings, get_settings
from whale_tracker.errors import ConfigurationError, TransientUpstreamError
from whale_tracker.indexer import Indexer
from whale_tracker.models import Chain

logger = logging.getLogger("whale_tracker")

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="whale-tracker",
        description="Index large transfers of tracked whale wallets into an event store",
    )
    parser.add_argument(
        "--chain",
        choices=[c.value for c in Chain],
        default=None,
        help="chain to index (default: INDEXER_CHAIN)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=None,
        help="logging level (default: LOG_LEVEL)",
    )
    parser.add_argument(
        "--print-config",
        action="store_true",
        help="print the effective configuration with secrets redacted and exit",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


async def run_indexer(settings: Settings, chain: Chain) -> None:
    """Run the indexer until SIGINT/SIGTERM, then stop it gracefully."""
    # Refuse to start against a chain with no endpoint.
    settings.chains.rpc_url_for(chain)

    indexer = Indexer.from_settings(settings, chain=chain)
    loop = asyncio.get_running_loop()

    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, indexer.request_stop)

    await indexer.run()

    stats = indexer.stats
    logger.info(
        "Indexed %d blocks (%d transactions), wrote %d events, %d errors",
        stats.blocks_scanned,
        stats.transactions_seen,
        stats.events_written,
        stats.errors,
    )


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        settings = get_settings()
    except ValidationError as e:
        print(f"Invalid configuration:\n{e}", file=sys.stderr)
        return 2

    level = args.log_level or settings.log_level
    logging.basicConfig(level=getattr(logging, level), format=LOG_FORMAT)

    if args.print_config:
        print(json.dumps(settings.redacted_summary(), indent=2))
        return 0

    chain = Chain(args.chain) if args.chain else settings.indexer.chain

    try:
        asyncio.run(run_indexer(settings, chain))
    except ConfigurationError as e:
        logger.error("Configuration error: %s", e)
        return 2
    except TransientUpstreamError as e:
        logger.error("Upstream unavailable at startup: %s", e)
        return 1
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    sys.exit(main())
