#!/usr/bin/env python
"""Main entry point for the Typenote MCP server."""
import argparse
import logging
import os
import sys
from pathlib import Path

from typenote_mcp.config import config
from typenote_mcp.models.db_models import init_db
from typenote_mcp.observability import configure_logging
from typenote_mcp.server.mcp_server import TypenoteMcpServer


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description="Typenote MCP Server")
    parser.add_argument(
        "--vault-dir",
        help="Vault directory holding one sub-directory per note type",
        type=str,
        default=os.environ.get("TYPENOTE_VAULT_DIR")
    )
    parser.add_argument(
        "--database-path",
        help="SQLite database file path (implies a file-backed index)",
        type=str,
        default=os.environ.get("TYPENOTE_DATABASE_PATH")
    )
    parser.add_argument(
        "--log-level",
        help="Logging level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=os.environ.get("TYPENOTE_LOG_LEVEL", "INFO")
    )
    return parser.parse_args(argv)


def update_config(args):
    """Update the global config with command line arguments."""
    if args.vault_dir:
        config.vault_dir = Path(args.vault_dir)
    if args.database_path:
        config.database_path = Path(args.database_path)
        config.in_memory_db = False


def main():
    """Run the Typenote MCP server."""
    args = parse_args()
    update_config(args)

    log_level = getattr(logging, args.log_level.upper(), logging.INFO)
    try:
        log_dir = configure_logging(level=log_level, console=True)
    except OSError as e:
        logging.basicConfig(level=log_level)
        logging.getLogger(__name__).warning(f"Failed to configure file logging: {e}")
        log_dir = None

    logger = logging.getLogger(__name__)
    if log_dir:
        logger.info(f"Persistent logging enabled: {log_dir}")

    vault_dir = config.get_vault_path()
    vault_dir.mkdir(parents=True, exist_ok=True)

    try:
        if config.in_memory_db:
            logger.info("Using in-memory SQLite index")
        else:
            logger.info(f"Using SQLite database: {config.get_db_url()}")
        engine = init_db(in_memory=config.in_memory_db)
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        sys.exit(1)

    try:
        logger.info(f"Starting Typenote MCP server for vault {vault_dir}")
        server = TypenoteMcpServer(engine=engine)
        server.run()
    except Exception as e:
        logger.error(f"Error running server: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
