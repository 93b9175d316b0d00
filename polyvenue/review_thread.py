"""Review thread: public discussion and the review-issue timeline.

Both threads share the review_events table. The discussion is two levels
deep (roots and direct replies) and only open on published manuscripts. The
review timeline is flat; its action tags drive the derived "revision
requested" flag, which is recomputed from the timeline on every read.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any

import aiosqlite

from polyvenue.config import settings
from polyvenue.database import transaction, utcnow
from polyvenue.errors import AuthorizationError, ConflictError, NotFoundError, ValidationFailure
from polyvenue.identity import Actor, AnonymousActor, RegisteredActor, anonymous_display_name
from polyvenue.manuscript_service import require_manuscript
from polyvenue.models import (
    AWAITING_DECISION,
    REVISION_REQUEST_ACTIONS,
    REVISION_STATE_ACTIONS,
    ManuscriptStatus,
    ReviewAction,
    ReviewEvent,
    ThreadEntry,
    ThreadKind,
)
from polyvenue.permission_scope import can_access_manuscript

logger = logging.getLogger("polyvenue.threads")

REVISION_NOTE_PREFIX = "[Revision submitted]"


# ---------------------------------------------------------------------------
# Row conversion
# ---------------------------------------------------------------------------

def _row_to_event(row: aiosqlite.Row | dict[str, Any]) -> ReviewEvent:
    d = dict(row)
    d.pop("actor_name", None)
    return ReviewEvent(**d)


def _display_name(row: aiosqlite.Row | dict[str, Any]) -> str:
    d = dict(row)
    if d.get("actor_id"):
        return d.get("actor_name") or d["actor_id"]
    if d.get("guest_name"):
        return d["guest_name"]
    return anonymous_display_name(d.get("guest_ip") or "")


async def _fetch_events(
    db: aiosqlite.Connection,
    manuscript_id: str,
    thread: ThreadKind,
) -> list[aiosqlite.Row]:
    async with db.execute(
        """
        SELECT e.*, u.name AS actor_name
        FROM review_events e
        LEFT JOIN users u ON u.user_id = e.actor_id
        WHERE e.manuscript_id = ? AND e.thread = ?
        ORDER BY e.created_at, e.rowid
        """,
        (manuscript_id, thread.value),
    ) as cursor:
        return list(await cursor.fetchall())


async def get_event(db: aiosqlite.Connection, event_id: str) -> ReviewEvent | None:
    async with db.execute("SELECT * FROM review_events WHERE event_id = ?", (event_id,)) as cursor:
        row = await cursor.fetchone()
    return _row_to_event(row) if row else None


async def _require_event(db: aiosqlite.Connection, event_id: str) -> ReviewEvent:
    event = await get_event(db, event_id)
    if event is None:
        raise NotFoundError("Comment not found", {"event_id": event_id})
    return event


# ---------------------------------------------------------------------------
# Writing
# ---------------------------------------------------------------------------

def _new_event(
    actor: Actor,
    manuscript_id: str,
    thread: ThreadKind,
    action: ReviewAction,
    body: str,
    parent_id: str | None = None,
) -> ReviewEvent:
    if isinstance(actor, RegisteredActor):
        return ReviewEvent(
            manuscript_id=manuscript_id,
            thread=thread,
            parent_id=parent_id,
            actor_id=actor.actor_id,
            guest_ip=None,
            guest_name=None,
            action=action,
            body=body,
        )
    return ReviewEvent(
        manuscript_id=manuscript_id,
        thread=thread,
        parent_id=parent_id,
        actor_id=None,
        guest_ip=actor.ip,
        guest_name=actor.display_name,
        action=action,
        body=body,
    )


async def _insert_event(db: aiosqlite.Connection, event: ReviewEvent) -> ReviewEvent:
    """Insert one event. Never commits."""
    await db.execute(
        """
        INSERT INTO review_events (
            event_id, manuscript_id, thread, parent_id, actor_id,
            guest_ip, guest_name, action, body, created_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            event.event_id,
            event.manuscript_id,
            event.thread.value,
            event.parent_id,
            event.actor_id,
            event.guest_ip,
            event.guest_name,
            event.action.value,
            event.body,
            event.created_at.isoformat(),
        ),
    )
    return event


def _clean_body(body: str, limit: int, required: bool = True) -> str:
    text = (body or "").strip()
    if required and not text:
        raise ValidationFailure.for_field("body", "Comment cannot be empty")
    if len(text) > limit:
        raise ValidationFailure.for_field("body", f"Comment must be at most {limit} characters")
    return text


async def post_comment(
    db: aiosqlite.Connection,
    actor: Actor,
    manuscript_id: str,
    body: str,
    parent_id: str | None = None,
) -> ReviewEvent:
    """Post to the public discussion of a published manuscript."""
    manuscript = await require_manuscript(db, manuscript_id)
    if manuscript.status != ManuscriptStatus.PUBLISHED:
        raise ConflictError(
            "Discussion is only open on published manuscripts",
            {"status": manuscript.status.value},
        )
    text = _clean_body(body, settings.policy.max_comment_length)

    if parent_id is not None:
        parent = await _require_event(db, parent_id)
        if parent.manuscript_id != manuscript_id or parent.thread != ThreadKind.DISCUSSION:
            raise ValidationFailure.for_field("parent_id", "Reply target is not part of this discussion")
        if parent.parent_id is not None:
            raise ValidationFailure.for_field("parent_id", "Replies to replies are not allowed")

    event = _new_event(actor, manuscript_id, ThreadKind.DISCUSSION, ReviewAction.COMMENT, text, parent_id)
    async with transaction(db):
        await _insert_event(db, event)
        await db.execute(
            "UPDATE manuscripts SET popularity = popularity + ? WHERE manuscript_id = ?",
            (settings.policy.comment_popularity_weight, manuscript_id),
        )
    return event


async def post_review_action(
    db: aiosqlite.Connection,
    actor: Actor,
    manuscript_id: str,
    action: ReviewAction,
    body: str = "",
) -> ReviewEvent:
    """
    Append an entry to the review-issue timeline.

    Anyone may post a plain Comment. Any other tag requires editorial scope
    over the manuscript and a manuscript still awaiting a decision.
    Status, pool and lock are never touched here.
    """
    manuscript = await require_manuscript(db, manuscript_id)

    if action == ReviewAction.REVISION_SUBMITTED:
        raise ValidationFailure.for_field("action", "Revisions are recorded by uploading a new version")

    if action != ReviewAction.COMMENT:
        if not await can_access_manuscript(db, actor, manuscript):
            raise AuthorizationError(
                "Only editors of this manuscript's venues may use review actions",
                {"manuscript_id": manuscript_id, "action": action.value},
            )
        if manuscript.status not in AWAITING_DECISION:
            raise ConflictError(
                "Manuscript is no longer under review",
                {"status": manuscript.status.value},
            )

    text = _clean_body(
        body,
        settings.policy.max_review_body_length,
        required=action == ReviewAction.COMMENT,
    )
    event = _new_event(actor, manuscript_id, ThreadKind.REVIEW, action, text)
    async with transaction(db):
        await _insert_event(db, event)

    if action in REVISION_REQUEST_ACTIONS:
        logger.info("Revision requested on %s (%s)", manuscript_id, action.value)
    return event


async def post_review_comment(
    db: aiosqlite.Connection,
    actor: Actor,
    manuscript_id: str,
    body: str,
) -> ReviewEvent:
    return await post_review_action(db, actor, manuscript_id, ReviewAction.COMMENT, body)


async def append_revision_submitted(
    db: aiosqlite.Connection,
    actor: Actor,
    manuscript_id: str,
    change_log: str = "",
) -> ReviewEvent:
    """Record an author's new version on the review timeline. Never commits."""
    note = change_log.strip() or settings.policy.default_revision_note
    event = _new_event(
        actor,
        manuscript_id,
        ThreadKind.REVIEW,
        ReviewAction.REVISION_SUBMITTED,
        f"{REVISION_NOTE_PREFIX} {note}",
    )
    return await _insert_event(db, event)


# ---------------------------------------------------------------------------
# Reading
# ---------------------------------------------------------------------------

async def _like_counts(db: aiosqlite.Connection, event_ids: list[str]) -> dict[str, int]:
    if not event_ids:
        return {}
    marks = ",".join("?" for _ in event_ids)
    async with db.execute(
        f"SELECT event_id, COUNT(*) FROM review_event_likes WHERE event_id IN ({marks}) GROUP BY event_id",
        tuple(event_ids),
    ) as cursor:
        return {row[0]: row[1] for row in await cursor.fetchall()}


async def _liked_by(db: aiosqlite.Connection, event_ids: list[str], viewer: Actor | None) -> set[str]:
    if not event_ids or viewer is None:
        return set()
    marks = ",".join("?" for _ in event_ids)
    if isinstance(viewer, RegisteredActor):
        column, value = "user_id", viewer.actor_id
    else:
        column, value = "guest_ip", viewer.ip
    async with db.execute(
        f"SELECT event_id FROM review_event_likes WHERE {column} = ? AND event_id IN ({marks})",
        (value, *event_ids),
    ) as cursor:
        return {row[0] for row in await cursor.fetchall()}


async def _to_entries(
    db: aiosqlite.Connection,
    rows: list[aiosqlite.Row],
    viewer: Actor | None,
) -> list[ThreadEntry]:
    ids = [row["event_id"] for row in rows]
    counts = await _like_counts(db, ids)
    liked = await _liked_by(db, ids, viewer)
    return [
        ThreadEntry(
            event=_row_to_event(row),
            display_name=_display_name(row),
            like_count=counts.get(row["event_id"], 0),
            liked_by_viewer=row["event_id"] in liked,
        )
        for row in rows
    ]


async def get_discussion(
    db: aiosqlite.Connection,
    manuscript_id: str,
    viewer: Actor | None = None,
) -> list[ThreadEntry]:
    """Root comments, oldest first, each with its direct replies."""
    rows = await _fetch_events(db, manuscript_id, ThreadKind.DISCUSSION)
    entries = await _to_entries(db, rows, viewer)

    roots: list[ThreadEntry] = []
    by_id: dict[str, ThreadEntry] = {}
    for entry in entries:
        if entry.event.parent_id is None:
            roots.append(entry)
            by_id[entry.event.event_id] = entry
    for entry in entries:
        parent = by_id.get(entry.event.parent_id or "")
        if parent is not None:
            parent.replies.append(entry)
    return roots


async def get_review_timeline(
    db: aiosqlite.Connection,
    manuscript_id: str,
    viewer: Actor | None = None,
) -> list[ThreadEntry]:
    """Flat review-issue timeline in creation order."""
    rows = await _fetch_events(db, manuscript_id, ThreadKind.REVIEW)
    return await _to_entries(db, rows, viewer)


async def is_revision_requested(db: aiosqlite.Connection, manuscript_id: str) -> bool:
    """True iff the latest state-moving review tag is a revision request."""
    tags = sorted(a.value for a in REVISION_STATE_ACTIONS)
    marks = ",".join("?" for _ in tags)
    async with db.execute(
        f"""
        SELECT action FROM review_events
        WHERE manuscript_id = ? AND thread = ? AND action IN ({marks})
        ORDER BY created_at DESC, rowid DESC
        LIMIT 1
        """,
        (manuscript_id, ThreadKind.REVIEW.value, *tags),
    ) as cursor:
        row = await cursor.fetchone()
    if row is None:
        return False
    return ReviewAction(row[0]) in REVISION_REQUEST_ACTIONS


# ---------------------------------------------------------------------------
# Likes and deletion
# ---------------------------------------------------------------------------

async def toggle_like(db: aiosqlite.Connection, actor: Actor, event_id: str) -> bool:
    """Add the actor's like if absent, remove it if present. Returns the new state."""
    await _require_event(db, event_id)
    if isinstance(actor, RegisteredActor):
        column, value = "user_id", actor.actor_id
    else:
        column, value = "guest_ip", actor.ip

    async with transaction(db):
        cursor = await db.execute(
            f"DELETE FROM review_event_likes WHERE event_id = ? AND {column} = ?",
            (event_id, value),
        )
        if cursor.rowcount > 0:
            return False
        await db.execute(
            f"""
            INSERT INTO review_event_likes (like_id, event_id, {column}, created_at)
            VALUES (?, ?, ?, ?)
            """,
            (str(uuid.uuid4()), event_id, value, utcnow().isoformat()),
        )
    return True


def _may_delete(actor: Actor, event: ReviewEvent) -> bool:
    if actor.is_admin:
        return True
    if isinstance(actor, RegisteredActor):
        return event.actor_id == actor.actor_id
    if isinstance(actor, AnonymousActor):
        return event.actor_id is None and event.guest_ip == actor.ip
    return False


async def delete_event(db: aiosqlite.Connection, actor: Actor, event_id: str) -> None:
    """Remove a discussion comment; its replies and likes go with it.

    Review-timeline entries are immutable: the revision flag is derived from them.
    """
    event = await _require_event(db, event_id)
    if event.thread != ThreadKind.DISCUSSION:
        raise ConflictError(
            "Review timeline entries cannot be deleted",
            {"event_id": event_id, "action": event.action.value},
        )
    if not _may_delete(actor, event):
        raise AuthorizationError("Not permitted to delete this comment", {"event_id": event_id})

    async with transaction(db):
        await db.execute("DELETE FROM review_events WHERE event_id = ?", (event_id,))
    logger.info("Thread entry %s on %s deleted by %s", event_id, event.manuscript_id, actor.display_name)
