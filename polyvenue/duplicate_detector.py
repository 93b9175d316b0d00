"""Duplicate detector: same-content submissions across manuscripts.

Two manuscripts sharing a content fingerprint stay fully independent rows;
the match only lets storage reuse the existing object and feeds a score
multiplier.
"""

from __future__ import annotations

import hashlib
import logging
from typing import TYPE_CHECKING

import aiosqlite

from polyvenue.errors import NotFoundError

if TYPE_CHECKING:
    from polyvenue.storage import BlobStorage

logger = logging.getLogger("polyvenue.duplicates")

DUPLICATE_FACTOR = 0.5


def fingerprint(data: bytes) -> str:
    """SHA-256 hex digest of file content."""
    return hashlib.sha256(data).hexdigest()


async def find_existing_object(
    db: aiosqlite.Connection,
    content_hash: str,
    storage: BlobStorage,
    exclude_manuscript_id: str | None = None,
) -> str | None:
    """URL of an already-stored object with this fingerprint, if it still exists."""
    async with db.execute(
        """
        SELECT manuscript_id, file_url FROM manuscripts
        WHERE content_hash = ? AND file_url != ''
        ORDER BY created_at
        """,
        (content_hash,),
    ) as cursor:
        rows = await cursor.fetchall()

    for row in rows:
        if row["manuscript_id"] == exclude_manuscript_id:
            continue
        if await storage.exists(row["file_url"]):
            logger.info("Reusing stored object of %s for hash %s", row["manuscript_id"], content_hash[:12])
            return row["file_url"]
    return None


async def _content_hash_of(db: aiosqlite.Connection, manuscript_id: str) -> str:
    async with db.execute(
        "SELECT content_hash FROM manuscripts WHERE manuscript_id = ?", (manuscript_id,)
    ) as cursor:
        row = await cursor.fetchone()
    if row is None:
        raise NotFoundError("Manuscript not found", {"manuscript_id": manuscript_id})
    return row[0] or ""


async def find_duplicates(db: aiosqlite.Connection, manuscript_id: str) -> list[str]:
    """Other manuscripts whose file content is byte-identical to this one."""
    content_hash = await _content_hash_of(db, manuscript_id)
    if not content_hash:
        return []
    async with db.execute(
        """
        SELECT manuscript_id FROM manuscripts
        WHERE content_hash = ? AND manuscript_id != ?
        ORDER BY created_at
        """,
        (content_hash, manuscript_id),
    ) as cursor:
        rows = await cursor.fetchall()
    return [row[0] for row in rows]


async def is_duplicate(db: aiosqlite.Connection, manuscript_id: str) -> bool:
    return bool(await find_duplicates(db, manuscript_id))


async def duplicate_factor(db: aiosqlite.Connection, manuscript_id: str) -> float:
    """Score multiplier: halved when another manuscript has the same content."""
    return DUPLICATE_FACTOR if await is_duplicate(db, manuscript_id) else 1.0
