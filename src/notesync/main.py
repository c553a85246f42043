#!/usr/bin/env python
"""Main entry point for the notesync MCP server."""
import argparse
import logging
import os
import sys
from pathlib import Path

import anyio

from notesync.config import config
from notesync.exceptions import ParserUnavailableError
from notesync.models.db_models import init_db
from notesync.observability import configure_logging
from notesync.server.mcp_server import NotesyncMcpServer


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description="Notesync MCP Server")
    parser.add_argument(
        "--notes-dir",
        help="Root directory holding the note files",
        type=str,
        default=os.environ.get("NOTESYNC_NOTES_DIR")
    )
    parser.add_argument(
        "--database-path",
        help="SQLite database file path",
        type=str,
        default=os.environ.get("NOTESYNC_DATABASE_PATH")
    )
    parser.add_argument(
        "--log-level",
        help="Logging level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=os.environ.get("NOTESYNC_LOG_LEVEL", "INFO")
    )
    parser.add_argument(
        "--no-index",
        help="Skip indexing the notes directory at startup",
        action="store_true",
    )
    return parser.parse_args(argv)


def update_config(args):
    """Update the global config with command line arguments."""
    if args.notes_dir:
        config.notes_dir = Path(args.notes_dir)
    if args.database_path:
        config.database_path = Path(args.database_path)


def main(argv=None):
    """Run the notesync MCP server."""
    args = parse_args(argv)
    update_config(args)

    # Configure logging (console + persistent file logging with rotation)
    log_level = getattr(logging, args.log_level.upper(), logging.INFO)
    try:
        log_dir = configure_logging(log_dir=config.log_dir, level=log_level, console=True)
    except Exception as e:
        # Fall back to basic console logging if file logging fails
        logging.basicConfig(level=log_level)
        logging.getLogger(__name__).warning(f"Failed to configure file logging: {e}")
        log_dir = None

    logger = logging.getLogger(__name__)
    if log_dir:
        logger.info(f"Persistent logging enabled: {log_dir}")

    # Ensure directories exist
    notes_dir = config.get_notes_dir()
    notes_dir.mkdir(parents=True, exist_ok=True)
    db_dir = config.get_absolute_path(config.database_path).parent
    db_dir.mkdir(parents=True, exist_ok=True)

    try:
        logger.info(f"Using SQLite database: {config.get_db_url()}")
        engine = init_db()
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        sys.exit(1)

    try:
        server = NotesyncMcpServer(engine=engine)
    except ParserUnavailableError as e:
        logger.error(f"Cannot start without a metadata parser: {e}")
        sys.exit(1)

    if not args.no_index:
        try:
            summary = anyio.run(server.indexer.index_all)
            logger.info(f"Startup index: {summary.to_dict()}")
        except Exception as e:
            logger.error(f"Startup indexing failed: {e}")

    try:
        logger.info("Starting notesync MCP server")
        server.run()
    except Exception as e:
        logger.error(f"Error running server: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
