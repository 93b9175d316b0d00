"""Per-actor daily usage counters.

Counters are rows keyed by (actor key, UTC day, kind). The increment is a
single conditional upsert, so two concurrent requests cannot both take the
last unit of a quota.
"""

from __future__ import annotations

import logging
from datetime import date

import aiosqlite

from polyvenue.database import utcnow

logger = logging.getLogger("polyvenue.usage")

SUBMISSION = "submission"


def _today() -> str:
    return utcnow().date().isoformat()


async def consume_quota(
    db: aiosqlite.Connection,
    actor_key: str,
    kind: str,
    limit: int,
    day: date | None = None,
) -> bool:
    """Take one unit of today's quota. Returns False once ``limit`` is reached.

    Does not commit; the unit is only spent if the caller's transaction commits.
    """
    day_key = day.isoformat() if day else _today()
    cursor = await db.execute(
        """
        INSERT INTO usage_counters (actor_key, day, kind, count)
        VALUES (?, ?, ?, 1)
        ON CONFLICT(actor_key, day, kind) DO UPDATE SET count = count + 1
        WHERE usage_counters.count < ?
        """,
        (actor_key, day_key, kind, limit),
    )
    granted = cursor.rowcount > 0
    if not granted:
        logger.info("Quota %s exhausted for %s on %s (limit %d)", kind, actor_key, day_key, limit)
    return granted


async def get_usage(
    db: aiosqlite.Connection,
    actor_key: str,
    kind: str,
    day: date | None = None,
) -> int:
    day_key = day.isoformat() if day else _today()
    async with db.execute(
        "SELECT count FROM usage_counters WHERE actor_key = ? AND day = ? AND kind = ?",
        (actor_key, day_key, kind),
    ) as cursor:
        row = await cursor.fetchone()
    return row[0] if row else 0
