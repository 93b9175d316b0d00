"""Main entry point: starts the REST API or bootstraps the first super-admin.

Usage:
    polyvenue                                  # Start REST API server
    polyvenue --host 0.0.0.0 --port 8080       # Bind elsewhere
    polyvenue --bootstrap-admin alice --name "Alice"   # Register a super-admin and exit
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from polyvenue.config import settings

logger = logging.getLogger("polyvenue")


def main():
    parser = argparse.ArgumentParser(
        description="Polyvenue, a multi-venue manuscript review and admission engine",
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
        "--bootstrap-admin",
        metavar="USER_ID",
        help="Register USER_ID as a super-admin in the local database, then exit",
    )
    parser.add_argument("--name", default="", help="Display name for --bootstrap-admin")

    args = parser.parse_args()

    logging.basicConfig(
        level=settings.server.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # Ensure data directories exist
    settings.ensure_dirs()

    if args.bootstrap_admin:
        asyncio.run(_bootstrap_admin(args.bootstrap_admin, args.name or args.bootstrap_admin))
        return
    _start_api(args.host, args.port)


async def _bootstrap_admin(user_id: str, name: str) -> None:
    """Create or promote a super-admin so the venue registry can be populated."""
    from polyvenue.database import get_db
    from polyvenue.identity import upsert_user
    from polyvenue.models import ActorRole, UserRecord

    db = await get_db()
    try:
        await upsert_user(db, UserRecord(user_id=user_id, name=name, role=ActorRole.SUPER_ADMIN))
    finally:
        await db.close()
    logger.info("Registered super-admin %s", user_id)


def _start_api(host: str, port: int):
    """Start the REST API server."""
    import uvicorn

    print(f"Starting Polyvenue REST API at http://{host}:{port}", file=sys.stderr)
    print(f"API docs at http://{host}:{port}/docs", file=sys.stderr)
    uvicorn.run(
        "polyvenue.api:app",
        host=host,
        port=port,
        log_level=settings.server.log_level,
        workers=settings.server.workers,
        proxy_headers=True,
        forwarded_allow_ips="*",
    )


if __name__ == "__main__":
    main()
