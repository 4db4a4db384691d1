import argparse
import asyncio
import logging

from . import server
from .utils import process_config

logger = logging.getLogger("mcp_notion_canvas")
logger.setLevel(logging.INFO)


def main():
    """Main entry point for the package."""
    parser = argparse.ArgumentParser(description="Notion Canvas MCP Server")
    parser.add_argument(
        "--db-url",
        default=None,
        help="PostgreSQL connection URL for canvas storage (postgresql://host:port)",
    )
    parser.add_argument("--username", default=None, help="PostgreSQL username")
    parser.add_argument("--password", default=None, help="PostgreSQL password")
    parser.add_argument("--database", default=None, help="PostgreSQL database name")
    parser.add_argument(
        "--notion-token", default=None, help="Notion integration token used for exports"
    )
    parser.add_argument(
        "--canvas-limit",
        default=None,
        help="Canvas limit of owners on the free plan (default: 3)",
    )
    parser.add_argument(
        "--export-concurrency",
        default=None,
        help="Maximum concurrent Notion calls during an export (default: 3)",
    )
    parser.add_argument("--namespace", default=None, help="Tool namespace prefix")
    parser.add_argument(
        "--transport", default=None, help="Transport type (stdio, sse, http)"
    )
    parser.add_argument(
        "--server-host", default=None, help="HTTP host (default: 127.0.0.1)"
    )
    parser.add_argument(
        "--server-port", type=int, default=None, help="HTTP port (default: 8000)"
    )
    parser.add_argument(
        "--server-path", default=None, help="HTTP path (default: /mcp/)"
    )
    parser.add_argument(
        "--allow-origins",
        default=None,
        help="Comma-separated list of allowed CORS origins",
    )
    parser.add_argument(
        "--allowed-hosts",
        default=None,
        help="Comma-separated list of allowed hosts for DNS rebinding protection",
    )

    args = parser.parse_args()

    config = process_config(args)
    asyncio.run(server.main(**config))


__all__ = ["main", "server"]
