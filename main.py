#!/usr/bin/env python3
"""
Membership site -- registration, login, roles and a data-driven access table.

Usage:
  python main.py                      start the server (same as runserver)
  python main.py runserver --port 8080
  python main.py init-db              create tables and seed the access rules
  python main.py --stop               ask a running server on localhost to stop

Environment variables (or .env):
  SECRET_KEY     Required unless DEBUG=true. At least 32 characters.
  DATABASE_URL   SQLAlchemy URL. Defaults to sqlite:///membership.db.
  PORT           Listening port, also used by --stop. Default 8080.
"""

import argparse
import logging
import sys
from typing import Optional

import requests

from core.config import get_settings

logger = logging.getLogger("membership.cli")

# Module-level session so --stop does not follow redirects off localhost.
_session = requests.Session()
_session.max_redirects = 0


def stop_server(port: int, scheme: str = "http", timeout: float = 5.0) -> bool:
    """POST /stop-process to the server on localhost. Returns True on success."""
    url = f"{scheme}://localhost:{port}/stop-process"
    try:
        resp = _session.post(url, timeout=timeout)
        resp.raise_for_status()
    except requests.RequestException as e:
        print(f"  [!] Could not stop the server at {url}: {e}")
        return False
    print(f"  Stop requested: {resp.text}")
    return True


def init_db(database_url: str = "") -> None:
    """Create the schema and seed roles, requests and grants, then exit."""
    from access.catalog import initialize_access_rules
    from core.database import make_engine

    engine = make_engine(database_url)
    try:
        changed = initialize_access_rules(engine)
    finally:
        engine.dispose()
    print("  Access rules updated." if changed else "  Access rules already up to date.")


def run_server(host: str, port: int, reload: bool = False) -> None:
    import uvicorn

    uvicorn.run("asgi:app", host=host, port=port, reload=reload)


def main(argv: Optional[list[str]] = None) -> int:
    settings = get_settings()

    parser = argparse.ArgumentParser(
        description="Membership site with role-based access rules.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "command",
        nargs="?",
        default="runserver",
        choices=["runserver", "init-db"],
        help="What to do (default: runserver)",
    )
    parser.add_argument(
        "--stop",
        action="store_true",
        help="Stop the server running on localhost at --port, then exit",
    )
    parser.add_argument("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=settings.port, help=f"Port (default: {settings.port})")
    parser.add_argument("--reload", action="store_true", help="Reload on code changes (development)")
    args = parser.parse_args(argv)

    if args.stop:
        scheme = "https" if settings.secure_cookies else "http"
        return 0 if stop_server(args.port, scheme=scheme) else 1

    if args.command == "init-db":
        init_db(settings.database_url)
        return 0

    run_server(args.host, args.port, reload=args.reload)
    return 0


if __name__ == "__main__":
    sys.exit(main())
