"""Audit service: append-only records of significant actions.

Two trails live here: the general audit log (submissions, withdrawals, venue
and staff changes) and the formal review log, the compliance record written
by every approve / reject decision. Neither is ever updated once written.
"""

from __future__ import annotations

from typing import Any

import aiosqlite

from polyvenue.database import from_json, to_json
from polyvenue.models import AuditAction, AuditEvent, FormalDecision, FormalReviewLog


async def log_event(
    db: aiosqlite.Connection,
    action: AuditAction,
    actor_id: str = "",
    target_id: str = "",
    target_type: str = "",
    details: dict[str, Any] | None = None,
    commit: bool = True,
) -> AuditEvent:
    """Write an immutable audit event.

    Pass ``commit=False`` when called inside ``database.transaction()``.
    """
    event = AuditEvent(
        action=action,
        actor_id=actor_id,
        target_id=target_id,
        target_type=target_type,
        details=details or {},
    )
    await db.execute(
        """
        INSERT INTO audit_events (event_id, action, actor_id, target_id, target_type, details, timestamp)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (
            event.event_id,
            event.action.value,
            event.actor_id,
            event.target_id,
            event.target_type,
            to_json(event.details),
            event.timestamp.isoformat(),
        ),
    )
    if commit:
        await db.commit()
    return event


async def get_events_for_target(
    db: aiosqlite.Connection,
    target_id: str,
    limit: int = 100,
) -> list[dict[str, Any]]:
    """Retrieve audit events for a given target (manuscript, venue, etc.)."""
    async with db.execute(
        """
        SELECT * FROM audit_events
        WHERE target_id = ?
        ORDER BY timestamp DESC, rowid DESC
        LIMIT ?
        """,
        (target_id, limit),
    ) as cursor:
        rows = await cursor.fetchall()
    return [_row_to_event_dict(row) for row in rows]


async def get_recent_events(
    db: aiosqlite.Connection,
    action: AuditAction | None = None,
    limit: int = 50,
) -> list[dict[str, Any]]:
    """Retrieve recent audit events, optionally filtered by action type."""
    if action:
        query = "SELECT * FROM audit_events WHERE action = ? ORDER BY timestamp DESC, rowid DESC LIMIT ?"
        params: tuple = (action.value, limit)
    else:
        query = "SELECT * FROM audit_events ORDER BY timestamp DESC, rowid DESC LIMIT ?"
        params = (limit,)

    async with db.execute(query, params) as cursor:
        rows = await cursor.fetchall()
    return [_row_to_event_dict(row) for row in rows]


def _row_to_event_dict(row: aiosqlite.Row) -> dict[str, Any]:
    d = dict(row)
    d["details"] = from_json(d.get("details")) or {}
    return d


# ---------------------------------------------------------------------------
# Formal review log
# ---------------------------------------------------------------------------

async def record_review_log(
    db: aiosqlite.Connection,
    manuscript_id: str,
    reviewer_id: str,
    action: FormalDecision,
    feedback: str = "",
    venue_id: str | None = None,
) -> FormalReviewLog:
    """Insert a FormalReviewLog row. Never commits; the caller owns the transaction."""
    log = FormalReviewLog(
        manuscript_id=manuscript_id,
        reviewer_id=reviewer_id,
        venue_id=venue_id,
        action=action,
        feedback=feedback,
    )
    await db.execute(
        """
        INSERT INTO formal_review_logs (log_id, manuscript_id, reviewer_id, venue_id, action, feedback, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (
            log.log_id,
            log.manuscript_id,
            log.reviewer_id,
            log.venue_id,
            log.action.value,
            log.feedback,
            log.created_at.isoformat(),
        ),
    )
    return log


async def get_review_logs(
    db: aiosqlite.Connection,
    manuscript_id: str,
) -> list[FormalReviewLog]:
    """Formal decisions on a manuscript, oldest first."""
    async with db.execute(
        """
        SELECT * FROM formal_review_logs
        WHERE manuscript_id = ?
        ORDER BY created_at, rowid
        """,
        (manuscript_id,),
    ) as cursor:
        rows = await cursor.fetchall()
    return [FormalReviewLog(**dict(row)) for row in rows]
