"""
Process entry point: wire settings, client and relay components together.

Any relay error ends the process with exit status 1. Restarting is always safe;
the relay resumes after the newest saved resume token.
"""

import argparse
import logging
import sys
from typing import List, Optional

from prometheus_client import start_http_server
from pymongo.errors import PyMongoError

from config.settings import Settings, get_settings, reload_settings
from .connectors.cdc import ChangeStreamRelay, RelayConfig, TokenManager, CDCError
from .destinations.sink_writer import SinkWriter
from .mongodb.connection import get_client, get_collection, ensure_collection
from .utils.logging import configure_logging, CorrelationContext

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="streamrelay",
        description="Relay MongoDB change stream documents into a sink collection"
    )
    parser.add_argument(
        "--env-file",
        help="Path to a .env file with MONGO_/RELAY_/METRICS_ settings",
        default=None
    )
    parser.add_argument(
        "--log-level",
        help="Override the configured log level",
        default=None
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Exit once the change stream is caught up instead of streaming forever"
    )
    return parser


def run(settings: Settings, once: bool = False, handle_signals: bool = True) -> int:
    """
    Run the relay until it is stopped or fails.

    Returns:
        Process exit status
    """
    if settings.metrics.enabled:
        start_http_server(settings.metrics.port)
        logger.info("Serving metrics", extra={"port": settings.metrics.port})

    client = get_client(settings.mongo)
    database = settings.mongo.database
    relay_settings = settings.relay

    with CorrelationContext() as run_id:
        try:
            token_collection = ensure_collection(client, database, relay_settings.token_collection)
            token_manager = TokenManager(token_collection)
            sink_writer = SinkWriter(
                get_collection(client, database, relay_settings.sink_collection),
                mode=relay_settings.sink_mode
            )
            relay = ChangeStreamRelay(
                source=get_collection(client, database, relay_settings.source_collection),
                token_manager=token_manager,
                sink_writer=sink_writer,
                config=RelayConfig.from_settings(relay_settings, stop_when_caught_up=once)
            )

            logger.info(
                "Starting relay",
                extra={
                    "run_id": run_id,
                    "database": database,
                    "source": relay_settings.source_collection,
                    "sink": relay_settings.sink_collection,
                    "tokens": relay_settings.token_collection,
                    "saved_cursors": token_manager.count_cursors()
                }
            )
            relay.start(handle_signals=handle_signals)
            return 0

        except (CDCError, PyMongoError) as e:
            logger.error(f"Relay terminated: {e}", exc_info=True)
            return 1

        finally:
            client.close()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    settings = reload_settings(args.env_file) if args.env_file else get_settings()
    configure_logging(args.log_level or settings.log_level)

    return run(settings, once=args.once)


if __name__ == "__main__":
    sys.exit(main())
