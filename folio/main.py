"""Main entry point — MCP server, REST API and scheduled deadline jobs.

Usage:
    python -m folio.main                    # MCP server (stdio)
    python -m folio.main --api              # REST API server
    python -m folio.main --both             # Both (MCP on stdio, API on port)
    python -m folio.main --transport sse    # MCP over SSE instead of stdio
    python -m folio.main --sweep-deadlines  # Recompute overdue flags once, then exit
    python -m folio.main --send-reminders   # Send due-soon reminders once, then exit
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys

from folio.config import settings

logger = logging.getLogger("folio")


def main():
    parser = argparse.ArgumentParser(
        description="Folio — editorial workflow engine for a scholarly journal",
    )
    parser.add_argument(
        "--api",
        action="store_true",
        help="Start the REST API server (FastAPI + uvicorn)",
    )
    parser.add_argument(
        "--both",
        action="store_true",
        help="Start both MCP server and REST API",
    )
    parser.add_argument(
        "--transport",
        choices=["stdio", "sse", "streamable-http"],
        default=settings.server.mcp_transport,
        help=f"MCP transport method (default: {settings.server.mcp_transport})",
    )
    parser.add_argument(
        "--host",
        default=settings.server.host,
        help=f"API host (default: {settings.server.host})",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=settings.server.rest_port,
        help=f"API port (default: {settings.server.rest_port})",
    )
    parser.add_argument(
        "--sweep-deadlines",
        action="store_true",
        help="Recompute overdue flags for all open deadlines and exit",
    )
    parser.add_argument(
        "--send-reminders",
        action="store_true",
        help="Send reminders for deadlines inside the reminder window and exit",
    )

    args = parser.parse_args()

    logging.basicConfig(
        level=settings.server.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    settings.ensure_dirs()

    if args.sweep_deadlines or args.send_reminders:
        asyncio.run(_run_jobs(args.sweep_deadlines, args.send_reminders))
    elif args.api:
        _start_api(args.host, args.port)
    elif args.both:
        _start_both(args.host, args.port, args.transport)
    else:
        _start_mcp(args.transport)


async def _run_jobs(sweep: bool, reminders: bool) -> None:
    """One-shot deadline jobs, meant for cron or a scheduler."""
    from folio.database import get_db
    from folio.deadline_monitor import send_deadline_reminders, sweep_deadlines

    db = await get_db()
    try:
        result: dict[str, object] = {}
        if sweep:
            result["sweep"] = (await sweep_deadlines(db)).model_dump(mode="json")
        if reminders:
            result["reminders_sent"] = await send_deadline_reminders(db)
    finally:
        await db.close()
    print(json.dumps(result, indent=2))


def _start_mcp(transport: str = "stdio"):
    """Start the MCP server."""
    from folio.mcp_server import mcp

    logger.info("Starting Folio MCP server (transport=%s)", transport)
    mcp.run(transport=transport)


def _start_api(host: str, port: int, workers: int | None = None):
    """Start the REST API server."""
    import uvicorn

    logger.info("Starting Folio REST API at http://%s:%d (docs at /docs)", host, port)
    worker_count = workers if workers is not None else settings.server.workers
    uvicorn.run(
        "folio.api:app",
        host=host,
        port=port,
        log_level=settings.server.log_level,
        workers=worker_count,
        proxy_headers=True,
        forwarded_allow_ips="*",
    )


def _start_both(host: str, port: int, transport: str):
    """Start both MCP and REST API concurrently."""
    import threading

    # API in a background thread; MCP keeps the main thread for stdio.
    api_thread = threading.Thread(
        target=_start_api,
        args=(host, port, 1),
        daemon=True,
    )
    api_thread.start()
    _start_mcp(transport)


if __name__ == "__main__":
    main()
