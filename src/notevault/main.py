#!/usr/bin/env python
"""Main entry point for the NoteVault MCP server."""
import argparse
import logging
import os
import sys
from pathlib import Path

from notevault.config import CACHE_BACKENDS, config
from notevault.models.db_models import init_db
from notevault.observability import configure_logging
from notevault.server.mcp_server import NoteVaultMcpServer
from notevault.storage.cache_store import create_cache_store


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description="NoteVault MCP Server")
    parser.add_argument(
        "--database-path",
        help="SQLite database file path",
        type=str,
        default=os.environ.get("NOTEVAULT_DATABASE_PATH")
    )
    parser.add_argument(
        "--database-url",
        help="SQLAlchemy database URL (overrides --database-path)",
        type=str,
        default=os.environ.get("NOTEVAULT_DATABASE_URL")
    )
    parser.add_argument(
        "--owner-id",
        help="Owner the server acts for, as issued by your identity provider",
        type=str,
        default=os.environ.get("NOTEVAULT_OWNER_ID")
    )
    parser.add_argument(
        "--cache-backend",
        help="Cache backend",
        choices=list(CACHE_BACKENDS),
        default=None
    )
    parser.add_argument(
        "--log-level",
        help="Logging level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=os.environ.get("NOTEVAULT_LOG_LEVEL", "INFO")
    )
    return parser.parse_args(argv)


def update_config(args):
    """Update the global config with command line arguments."""
    if args.database_path:
        config.database_path = Path(args.database_path)
    if args.database_url:
        config.database_url = args.database_url
    if args.owner_id:
        config.owner_id = args.owner_id
    if args.cache_backend:
        config.cache_backend = args.cache_backend


def main(argv=None):
    """Run the NoteVault MCP server."""
    args = parse_args(argv)
    update_config(args)

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

    # Engine and cache are created here and closed here, nowhere else
    try:
        db_url = config.get_db_url()
        logger.info(f"Using database: {db_url}")
        engine = init_db(db_url, lock_timeout=config.lock_timeout)
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        sys.exit(1)

    cache_store = create_cache_store(config.cache_backend, config.cache_max_entries)

    try:
        logger.info(f"Starting NoteVault MCP server for owner {config.owner_id}")
        server = NoteVaultMcpServer(engine, cache_store, owner_id=config.owner_id)
        server.run()
    except Exception as e:
        logger.error(f"Error running server: {e}")
        sys.exit(1)
    finally:
        cache_store.close()
        engine.dispose()
        logger.info("NoteVault MCP server stopped")


if __name__ == "__main__":
    main()
