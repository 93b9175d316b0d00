"""Permission scope: which venues an actor may act for.

Scope is recomputed from the actor's role and memberships on every call.
Mutating operations re-check the target venue here even when a listing
already filtered it, since venue ids arrive from client input.
"""

from __future__ import annotations

import aiosqlite

from polyvenue.config import settings
from polyvenue.errors import AuthorizationError
from polyvenue.identity import Actor, RegisteredActor
from polyvenue.manuscript_service import query_manuscripts
from polyvenue.models import (
    ActorRole,
    FormalReviewLog,
    Manuscript,
    Venue,
    VenueKind,
    VenueStatus,
)
from polyvenue.venue_service import require_venue


def venue_memberships(actor: Actor) -> set[str]:
    """Venues the actor is staff of (managed venue and editor venues)."""
    return set(actor.memberships())


async def _filter_by_kind(
    db: aiosqlite.Connection,
    venue_ids: set[str],
    kind: VenueKind | None,
) -> set[str]:
    if not venue_ids or kind is None:
        return venue_ids
    ids = sorted(venue_ids)
    placeholders = ",".join("?" for _ in ids)
    async with db.execute(
        f"SELECT venue_id FROM venues WHERE venue_id IN ({placeholders}) AND kind = ?",
        (*ids, kind.value),
    ) as cursor:
        rows = await cursor.fetchall()
    return {row[0] for row in rows}


async def authorized_venue_ids(
    db: aiosqlite.Connection,
    actor: Actor,
    kind: VenueKind | None = None,
) -> set[str]:
    """
    The venue ids the actor may make editorial decisions for.

    - super-administrator: every active venue
    - editor-in-chief: the one managed venue
    - editor: the venues they were added to
    - anyone else: nothing
    """
    if not isinstance(actor, RegisteredActor):
        return set()

    if actor.role == ActorRole.SUPER_ADMIN:
        if kind is None:
            query, params = "SELECT venue_id FROM venues WHERE status = ?", (VenueStatus.ACTIVE.value,)
        else:
            query = "SELECT venue_id FROM venues WHERE status = ? AND kind = ?"
            params = (VenueStatus.ACTIVE.value, kind.value)
        async with db.execute(query, params) as cursor:
            rows = await cursor.fetchall()
        return {row[0] for row in rows}

    if actor.role == ActorRole.ADMIN:
        ids = {actor.managed_venue_id} if actor.managed_venue_id else set()
        return await _filter_by_kind(db, ids, kind)

    if actor.role == ActorRole.REVIEWER:
        return await _filter_by_kind(db, set(actor.reviewer_venue_ids), kind)

    return set()


async def require_venue_scope(db: aiosqlite.Connection, actor: Actor, venue_id: str) -> Venue:
    """Load a venue and verify the actor may decide for it."""
    venue = await require_venue(db, venue_id)
    if venue_id not in await authorized_venue_ids(db, actor, venue.kind):
        raise AuthorizationError(
            "You are not an editor of this venue",
            {"venue_id": venue_id},
        )
    return venue


async def can_access_manuscript(db: aiosqlite.Connection, actor: Actor, manuscript: Manuscript) -> bool:
    """True when the manuscript's lock or any pool member is in the actor's scope."""
    if actor.is_super_admin:
        return True
    scope = await authorized_venue_ids(db, actor)
    if not scope:
        return False
    if manuscript.locked_venue_id in scope:
        return True
    return any(vid in scope for vid in manuscript.candidate_venue_ids)


# ---------------------------------------------------------------------------
# Scoped editorial queries
# ---------------------------------------------------------------------------

async def list_review_queue(
    db: aiosqlite.Connection,
    actor: Actor,
    kind: VenueKind = VenueKind.JOURNAL,
    limit: int = 100,
) -> list[Manuscript]:
    """Manuscripts awaiting a decision from one of the actor's venues."""
    scope = sorted(await authorized_venue_ids(db, actor, kind))
    if not scope:
        return []

    venue_marks = ",".join("?" for _ in scope)
    if kind == VenueKind.CONFERENCE:
        statuses = settings.policy.conference_queue_statuses
        status_marks = ",".join("?" for _ in statuses)
        return await query_manuscripts(
            db,
            f"status IN ({status_marks}) AND locked_conference_id IN ({venue_marks})",
            (*statuses, *scope),
            order_by="created_at ASC",
            limit=limit,
        )

    statuses = settings.policy.journal_queue_statuses
    status_marks = ",".join("?" for _ in statuses)
    return await query_manuscripts(
        db,
        f"""
        status IN ({status_marks}) AND (
            locked_journal_id IN ({venue_marks})
            OR manuscript_id IN (
                SELECT manuscript_id FROM manuscript_candidate_venues
                WHERE venue_id IN ({venue_marks})
            )
        )
        """,
        (*statuses, *scope, *scope),
        order_by="created_at ASC",
        limit=limit,
    )


async def list_decision_history(
    db: aiosqlite.Connection,
    actor: Actor,
    limit: int = 100,
) -> list[FormalReviewLog]:
    """Formal decisions on manuscripts currently in the actor's scope, newest first."""
    scope = sorted(await authorized_venue_ids(db, actor))
    if not scope:
        return []
    marks = ",".join("?" for _ in scope)
    async with db.execute(
        f"""
        SELECT l.* FROM formal_review_logs l
        JOIN manuscripts m ON m.manuscript_id = l.manuscript_id
        WHERE l.venue_id IN ({marks})
           OR m.locked_journal_id IN ({marks})
           OR m.locked_conference_id IN ({marks})
        ORDER BY l.created_at DESC, l.rowid DESC
        LIMIT ?
        """,
        (*scope, *scope, *scope, limit),
    ) as cursor:
        rows = await cursor.fetchall()
    return [FormalReviewLog(**dict(row)) for row in rows]
