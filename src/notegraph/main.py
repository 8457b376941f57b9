#!/usr/bin/env python
"""Main entry point for Notegraph."""
import argparse
import atexit
import json
import logging
import os
import sys
from pathlib import Path

from notegraph.config import config
from notegraph.models.db_models import init_db
from notegraph.observability import configure_logging, metrics


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description="Notegraph enrichment server")
    parser.add_argument(
        "--database-path",
        help="SQLite database file path",
        type=str,
        default=os.environ.get("NOTEGRAPH_DATABASE_PATH"),
    )
    parser.add_argument(
        "--log-level",
        help="Logging level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=os.environ.get("NOTEGRAPH_LOG_LEVEL", "INFO"),
    )
    parser.add_argument(
        "--process-pending",
        metavar="OWNER",
        help="Process the owner's pending items once, print the result as JSON and exit",
        type=str,
        default=None,
    )
    return parser.parse_args(argv)


def update_config(args):
    """Update the global config with command line arguments."""
    if args.database_path:
        config.database_path = Path(args.database_path)


def _save_metrics_on_exit():
    try:
        if metrics.save_metrics():
            logging.getLogger(__name__).info("Metrics saved to disk on shutdown")
    except Exception as e:
        logging.getLogger(__name__).warning(f"Failed to save metrics on shutdown: {e}")


def run_batch(owner_id: str, engine) -> int:
    """One-shot batch run. Returns the process exit code."""
    from notegraph.services.item_service import ItemService
    from notegraph.services.openai_provider import OpenAIAnalysisProvider

    service = ItemService(provider=OpenAIAnalysisProvider(), engine=engine)
    try:
        result = service.process_pending(owner_id)
    finally:
        service.shutdown(wait=True)
    print(json.dumps(result.to_dict(), indent=2))
    return 0 if result.success else 1


def main(argv=None):
    """Run the Notegraph MCP server, or a single batch with --process-pending."""
    args = parse_args(argv)
    update_config(args)

    log_level = getattr(logging, args.log_level.upper(), logging.INFO)
    try:
        log_dir = configure_logging(level=log_level, console=True)
    except Exception as e:
        # Fall back to basic console logging if file logging fails
        logging.basicConfig(level=log_level)
        logging.getLogger(__name__).warning(f"Failed to configure file logging: {e}")
        log_dir = None

    logger = logging.getLogger(__name__)
    if log_dir:
        logger.info(f"Persistent logging enabled: {log_dir}")

    atexit.register(_save_metrics_on_exit)

    try:
        logger.info(f"Using SQLite database: {config.get_db_url()}")
        engine = init_db()
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        sys.exit(1)

    if args.process_pending:
        try:
            sys.exit(run_batch(args.process_pending, engine))
        except Exception as e:
            logger.error(f"Batch run failed: {e}")
            sys.exit(1)

    try:
        from notegraph.server.mcp_server import NotegraphMcpServer

        logger.info("Starting Notegraph MCP server")
        server = NotegraphMcpServer(engine=engine)
        server.run()
    except Exception as e:
        logger.error(f"Error running server: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
