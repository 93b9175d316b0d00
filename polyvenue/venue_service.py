"""Venue service: journals and conferences, their staff, and candidate pools.

Journals and conferences are one capability with a ``kind`` tag. Staff is an
optional editor-in-chief (users.managed_venue_id) plus any number of editors
(venue_reviewers). Pool helpers never commit; callers wrap them in a
transaction together with the status change they belong to.
"""

from __future__ import annotations

import logging

import aiosqlite

from polyvenue.audit_service import log_event
from polyvenue.database import utcnow
from polyvenue.errors import AuthorizationError, NotFoundError, ValidationFailure
from polyvenue.identity import Actor, RegisteredActor, actor_label, get_user
from polyvenue.models import (
    ActorRole,
    AuditAction,
    Venue,
    VenueCreate,
    VenueKind,
    VenueStatus,
    VenueUpdate,
)

logger = logging.getLogger("polyvenue.venues")


def _require_super_admin(actor: Actor) -> RegisteredActor:
    if not isinstance(actor, RegisteredActor) or not actor.is_super_admin:
        raise AuthorizationError("Only a platform administrator may manage venues")
    return actor


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

async def create_venue(db: aiosqlite.Connection, actor: Actor, data: VenueCreate) -> Venue:
    """Register a new journal or conference."""
    _require_super_admin(actor)
    code = data.code.strip()
    if await _code_taken(db, code):
        raise ValidationFailure.for_field("code", f"Venue code '{code}' is already in use")

    venue = Venue(
        kind=data.kind,
        code=code,
        name=data.name.strip(),
        description=data.description,
        status=data.status,
    )
    try:
        await db.execute(
            """
            INSERT INTO venues (venue_id, kind, code, name, description, status, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                venue.venue_id,
                venue.kind.value,
                venue.code,
                venue.name,
                venue.description,
                venue.status.value,
                venue.created_at.isoformat(),
                venue.updated_at.isoformat(),
            ),
        )
    except aiosqlite.IntegrityError as exc:
        raise ValidationFailure.for_field("code", f"Venue code '{code}' is already in use") from exc

    await log_event(
        db,
        AuditAction.VENUE_CREATED,
        actor_id=actor_label(actor),
        target_id=venue.venue_id,
        target_type="venue",
        details={"kind": venue.kind.value, "code": venue.code},
    )
    logger.info("Created %s %s (%s)", venue.kind.value, venue.code, venue.venue_id)
    return venue


async def update_venue(
    db: aiosqlite.Connection,
    actor: Actor,
    venue_id: str,
    changes: VenueUpdate,
) -> Venue:
    _require_super_admin(actor)
    venue = await require_venue(db, venue_id)

    updates = changes.model_dump(exclude_none=True)
    if not updates:
        return venue
    venue = venue.model_copy(update={**updates, "updated_at": utcnow()})

    await db.execute(
        "UPDATE venues SET name = ?, description = ?, status = ?, updated_at = ? WHERE venue_id = ?",
        (
            venue.name,
            venue.description,
            venue.status.value,
            venue.updated_at.isoformat(),
            venue.venue_id,
        ),
    )
    await log_event(
        db,
        AuditAction.VENUE_UPDATED,
        actor_id=actor_label(actor),
        target_id=venue_id,
        target_type="venue",
        details={k: (v.value if hasattr(v, "value") else v) for k, v in updates.items()},
    )
    return venue


async def delete_venue(db: aiosqlite.Connection, actor: Actor, venue_id: str) -> None:
    """Remove a venue that owns no manuscripts and has no staff."""
    _require_super_admin(actor)
    venue = await require_venue(db, venue_id)

    manuscripts = await count_venue_manuscripts(db, venue_id)
    editor_in_chief = await get_editor_in_chief_id(db, venue_id)
    reviewers = await list_reviewer_ids(db, venue_id)
    if manuscripts or editor_in_chief or reviewers:
        raise ValidationFailure(
            "Venue still has manuscripts or staff",
            {"venue_id": ["Remove all manuscripts and staff before deleting this venue"]},
            details={
                "manuscripts": manuscripts,
                "has_editor_in_chief": editor_in_chief is not None,
                "reviewers": len(reviewers),
            },
        )

    await db.execute("DELETE FROM venues WHERE venue_id = ?", (venue_id,))
    await log_event(
        db,
        AuditAction.VENUE_DELETED,
        actor_id=actor_label(actor),
        target_id=venue_id,
        target_type="venue",
        details={"code": venue.code},
    )
    logger.info("Deleted venue %s", venue.code)


async def get_venue(db: aiosqlite.Connection, venue_id: str) -> Venue | None:
    async with db.execute("SELECT * FROM venues WHERE venue_id = ?", (venue_id,)) as cursor:
        row = await cursor.fetchone()
    if row is None:
        return None
    return _row_to_venue(row)


async def require_venue(db: aiosqlite.Connection, venue_id: str) -> Venue:
    venue = await get_venue(db, venue_id)
    if venue is None:
        raise NotFoundError("Venue not found", {"venue_id": venue_id})
    return venue


async def get_venues(db: aiosqlite.Connection, venue_ids: list[str]) -> dict[str, Venue]:
    """Fetch several venues at once, keyed by id; unknown ids are absent."""
    if not venue_ids:
        return {}
    placeholders = ",".join("?" for _ in venue_ids)
    async with db.execute(
        f"SELECT * FROM venues WHERE venue_id IN ({placeholders})", tuple(venue_ids)
    ) as cursor:
        rows = await cursor.fetchall()
    return {row["venue_id"]: _row_to_venue(row) for row in rows}


async def list_venues(
    db: aiosqlite.Connection,
    kind: VenueKind | None = None,
    status: VenueStatus | None = None,
) -> list[Venue]:
    clauses: list[str] = []
    params: list[str] = []
    if kind is not None:
        clauses.append("kind = ?")
        params.append(kind.value)
    if status is not None:
        clauses.append("status = ?")
        params.append(status.value)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

    async with db.execute(f"SELECT * FROM venues {where} ORDER BY name", tuple(params)) as cursor:
        rows = await cursor.fetchall()
    return [_row_to_venue(row) for row in rows]


async def count_venue_manuscripts(db: aiosqlite.Connection, venue_id: str) -> int:
    """Manuscripts locked to the venue or still holding it in their pool."""
    async with db.execute(
        """
        SELECT COUNT(*) FROM manuscripts
        WHERE locked_journal_id = ? OR locked_conference_id = ?
           OR manuscript_id IN (
               SELECT manuscript_id FROM manuscript_candidate_venues WHERE venue_id = ?
           )
        """,
        (venue_id, venue_id, venue_id),
    ) as cursor:
        row = await cursor.fetchone()
    return row[0] if row else 0


async def _code_taken(db: aiosqlite.Connection, code: str) -> bool:
    async with db.execute("SELECT 1 FROM venues WHERE code = ?", (code,)) as cursor:
        return await cursor.fetchone() is not None


def _row_to_venue(row: aiosqlite.Row) -> Venue:
    return Venue(**dict(row))


# ---------------------------------------------------------------------------
# Staff
# ---------------------------------------------------------------------------

async def get_editor_in_chief_id(db: aiosqlite.Connection, venue_id: str) -> str | None:
    async with db.execute(
        "SELECT user_id FROM users WHERE managed_venue_id = ?", (venue_id,)
    ) as cursor:
        row = await cursor.fetchone()
    return row[0] if row else None


async def list_reviewer_ids(db: aiosqlite.Connection, venue_id: str) -> list[str]:
    async with db.execute(
        "SELECT user_id FROM venue_reviewers WHERE venue_id = ? ORDER BY user_id", (venue_id,)
    ) as cursor:
        rows = await cursor.fetchall()
    return [row[0] for row in rows]


async def list_staff_ids(db: aiosqlite.Connection, venue_ids: list[str]) -> list[str]:
    """Editors-in-chief and editors of the given venues, deduplicated."""
    staff: list[str] = []
    for venue_id in venue_ids:
        eic = await get_editor_in_chief_id(db, venue_id)
        for user_id in ([eic] if eic else []) + await list_reviewer_ids(db, venue_id):
            if user_id not in staff:
                staff.append(user_id)
    return staff


async def set_editor_in_chief(
    db: aiosqlite.Connection,
    actor: Actor,
    venue_id: str,
    user_id: str | None,
) -> str | None:
    """Assign (or clear, with ``user_id=None``) a venue's editor-in-chief."""
    _require_super_admin(actor)
    await require_venue(db, venue_id)

    user = None
    if user_id is not None:
        user = await get_user(db, user_id)
        if user is None:
            raise NotFoundError("User not found", {"user_id": user_id})
        if user.managed_venue_id and user.managed_venue_id != venue_id:
            raise ValidationFailure.for_field(
                "user_id", "User already manages another venue"
            )

    await db.execute(
        "UPDATE users SET managed_venue_id = NULL WHERE managed_venue_id = ?", (venue_id,)
    )
    if user is not None:
        role = user.role if user.role == ActorRole.SUPER_ADMIN else ActorRole.ADMIN
        await db.execute(
            "UPDATE users SET managed_venue_id = ?, role = ? WHERE user_id = ?",
            (venue_id, role.value, user.user_id),
        )
    await log_event(
        db,
        AuditAction.STAFF_CHANGED,
        actor_id=actor_label(actor),
        target_id=venue_id,
        target_type="venue",
        details={"editor_in_chief": user_id},
    )
    return user_id


def _require_staff_manager(actor: Actor, venue_id: str) -> None:
    if isinstance(actor, RegisteredActor):
        if actor.is_super_admin:
            return
        if actor.role == ActorRole.ADMIN and actor.managed_venue_id == venue_id:
            return
    raise AuthorizationError("Not permitted to manage this venue's editors", {"venue_id": venue_id})


async def add_reviewer(db: aiosqlite.Connection, actor: Actor, venue_id: str, user_id: str) -> None:
    _require_staff_manager(actor, venue_id)
    await require_venue(db, venue_id)
    user = await get_user(db, user_id)
    if user is None:
        raise NotFoundError("User not found", {"user_id": user_id})

    await db.execute(
        "INSERT OR IGNORE INTO venue_reviewers (venue_id, user_id) VALUES (?, ?)",
        (venue_id, user_id),
    )
    if user.role == ActorRole.USER:
        await db.execute(
            "UPDATE users SET role = ? WHERE user_id = ?", (ActorRole.REVIEWER.value, user_id)
        )
    await log_event(
        db,
        AuditAction.STAFF_CHANGED,
        actor_id=actor_label(actor),
        target_id=venue_id,
        target_type="venue",
        details={"added_reviewer": user_id},
    )


async def remove_reviewer(db: aiosqlite.Connection, actor: Actor, venue_id: str, user_id: str) -> None:
    _require_staff_manager(actor, venue_id)
    await require_venue(db, venue_id)
    cursor = await db.execute(
        "DELETE FROM venue_reviewers WHERE venue_id = ? AND user_id = ?", (venue_id, user_id)
    )
    if cursor.rowcount == 0:
        raise NotFoundError("User is not an editor of this venue", {"user_id": user_id})
    await log_event(
        db,
        AuditAction.STAFF_CHANGED,
        actor_id=actor_label(actor),
        target_id=venue_id,
        target_type="venue",
        details={"removed_reviewer": user_id},
    )


# ---------------------------------------------------------------------------
# Candidate pool primitives (no commit)
# ---------------------------------------------------------------------------

async def get_pool(db: aiosqlite.Connection, manuscript_id: str) -> list[str]:
    async with db.execute(
        """
        SELECT venue_id FROM manuscript_candidate_venues
        WHERE manuscript_id = ?
        ORDER BY added_at, rowid
        """,
        (manuscript_id,),
    ) as cursor:
        rows = await cursor.fetchall()
    return [row[0] for row in rows]


async def add_to_pool(db: aiosqlite.Connection, manuscript_id: str, venue_ids: list[str]) -> None:
    now = utcnow().isoformat()
    await db.executemany(
        """
        INSERT OR IGNORE INTO manuscript_candidate_venues (manuscript_id, venue_id, added_at)
        VALUES (?, ?, ?)
        """,
        [(manuscript_id, venue_id, now) for venue_id in venue_ids],
    )


async def remove_from_pool(db: aiosqlite.Connection, manuscript_id: str, venue_id: str) -> bool:
    """Drop one venue from the pool; returns False when it was not a member."""
    cursor = await db.execute(
        "DELETE FROM manuscript_candidate_venues WHERE manuscript_id = ? AND venue_id = ?",
        (manuscript_id, venue_id),
    )
    return cursor.rowcount > 0


async def clear_pool(db: aiosqlite.Connection, manuscript_id: str) -> None:
    await db.execute(
        "DELETE FROM manuscript_candidate_venues WHERE manuscript_id = ?", (manuscript_id,)
    )
