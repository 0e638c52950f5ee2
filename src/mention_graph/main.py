#!/usr/bin/env python
"""Main entry point for the mention graph MCP server."""
import argparse
import atexit
import logging
import os
import sys
from pathlib import Path

from mention_graph.config import config
from mention_graph.exceptions import ConfigurationError
from mention_graph.models.db_models import init_db
from mention_graph.observability import configure_logging, metrics
from mention_graph.server.mcp_server import MentionGraphMcpServer


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description="Mention Graph MCP Server")
    parser.add_argument(
        "--database-path",
        help="SQLite database file path",
        type=str,
        default=os.environ.get("MENTION_GRAPH_DATABASE_PATH")
    )
    parser.add_argument(
        "--in-memory",
        help="Keep the index in an in-memory database",
        action="store_true",
    )
    parser.add_argument(
        "--resolve-timeout",
        help="Seconds a target lookup may take before its mentions are stored as dangling",
        type=float,
        default=None,
    )
    parser.add_argument(
        "--log-level",
        help="Logging level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=os.environ.get("MENTION_GRAPH_LOG_LEVEL", "INFO")
    )
    return parser.parse_args(argv)


def update_config(args):
    """Update the global config with command line arguments."""
    if args.database_path:
        config.database_path = Path(args.database_path)
    if args.in_memory:
        config.in_memory_db = True
    if args.resolve_timeout is not None:
        if args.resolve_timeout <= 0:
            raise ConfigurationError(
                "--resolve-timeout must be greater than 0",
                config_key="resolve_timeout_seconds",
            )
        config.resolve_timeout_seconds = args.resolve_timeout


def _save_metrics_on_exit():
    """Save metrics to disk on server shutdown."""
    try:
        if metrics.save_metrics():
            logging.getLogger(__name__).info("Metrics saved to disk on shutdown")
    except Exception as e:
        logging.getLogger(__name__).warning(f"Failed to save metrics on shutdown: {e}")


def main(argv=None):
    """Run the mention graph MCP server."""
    args = parse_args(argv)

    # Configure logging (console + persistent file logging with rotation)
    log_level = getattr(logging, args.log_level.upper(), logging.INFO)
    try:
        log_dir = configure_logging(log_dir=config.log_dir, level=log_level, console=True)
    except OSError as e:
        # Fall back to basic console logging if file logging fails
        logging.basicConfig(level=log_level)
        logging.getLogger(__name__).warning(f"Failed to configure file logging: {e}")
        log_dir = None

    logger = logging.getLogger(__name__)
    if log_dir:
        logger.info(f"Persistent logging enabled: {log_dir}")

    try:
        update_config(args)
    except ConfigurationError as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(2)

    atexit.register(_save_metrics_on_exit)

    # Single engine shared by all repositories
    try:
        logger.info(f"Using SQLite database: {config.get_db_url()}")
        engine = init_db()
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        sys.exit(1)

    try:
        logger.info("Starting mention graph MCP server")
        server = MentionGraphMcpServer(engine=engine)
        server.run()
    except Exception as e:
        logger.error(f"Error running server: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
