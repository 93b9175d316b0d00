"""Manuscript service: submission intake, lookup, and author self-service.

Owns the manuscript lifecycle up to the point an editor takes over:
submission to one or more candidate venues, reading manuscripts back with
their pool and fund links, and the uploader's own withdraw / delete /
cover / takedown requests. Editorial transitions live in ``workflow``.
"""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import urlparse

import aiosqlite

from polyvenue.audit_service import log_event
from polyvenue.collaborators import Notifier, notify_quietly
from polyvenue.config import settings
from polyvenue.database import from_json, generate_manuscript_id, to_json, transaction, utcnow
from polyvenue.duplicate_detector import find_existing_object
from polyvenue.errors import AuthorizationError, ConflictError, NotFoundError, ValidationFailure
from polyvenue.identity import Actor, RegisteredActor, actor_label
from polyvenue.models import (
    AuditAction,
    Manuscript,
    ManuscriptStatus,
    ManuscriptSubmission,
    VenueKind,
    VenueStatus,
)
from polyvenue.storage import BlobStorage, UploadedFile, check_upload_policy
from polyvenue.usage_service import SUBMISSION, consume_quota
from polyvenue.venue_service import add_to_pool, get_venues, list_staff_ids

logger = logging.getLogger("polyvenue.manuscripts")


# ---------------------------------------------------------------------------
# Row conversion
# ---------------------------------------------------------------------------

def _row_to_manuscript(
    row: aiosqlite.Row | dict[str, Any],
    pool: list[str] | None = None,
    fund_ids: list[str] | None = None,
) -> Manuscript:
    """Convert a SQLite row to a Manuscript model."""
    d = dict(row)
    d["authors"] = from_json(d.get("authors", "[]")) or []
    d["candidate_venue_ids"] = pool or []
    d["fund_ids"] = fund_ids or []
    return Manuscript(**d)


async def _load_links(
    db: aiosqlite.Connection,
    manuscript_ids: list[str],
) -> tuple[dict[str, list[str]], dict[str, list[str]]]:
    """Pools and fund links for a batch of manuscripts."""
    pools: dict[str, list[str]] = {mid: [] for mid in manuscript_ids}
    funds: dict[str, list[str]] = {mid: [] for mid in manuscript_ids}
    if not manuscript_ids:
        return pools, funds

    placeholders = ",".join("?" for _ in manuscript_ids)
    async with db.execute(
        f"""
        SELECT manuscript_id, venue_id FROM manuscript_candidate_venues
        WHERE manuscript_id IN ({placeholders})
        ORDER BY added_at, rowid
        """,
        tuple(manuscript_ids),
    ) as cursor:
        for row in await cursor.fetchall():
            pools[row[0]].append(row[1])

    async with db.execute(
        f"""
        SELECT manuscript_id, fund_id FROM manuscript_fund_links
        WHERE manuscript_id IN ({placeholders})
        ORDER BY fund_id
        """,
        tuple(manuscript_ids),
    ) as cursor:
        for row in await cursor.fetchall():
            funds[row[0]].append(row[1])

    return pools, funds


async def query_manuscripts(
    db: aiosqlite.Connection,
    where: str = "",
    params: tuple = (),
    order_by: str = "created_at DESC",
    limit: int = 100,
) -> list[Manuscript]:
    """Run a filtered manuscript query and attach pool and fund links."""
    sql = "SELECT * FROM manuscripts"
    if where:
        sql += f" WHERE {where}"
    sql += f" ORDER BY {order_by} LIMIT ?"

    async with db.execute(sql, (*params, limit)) as cursor:
        rows = await cursor.fetchall()

    ids = [row["manuscript_id"] for row in rows]
    pools, funds = await _load_links(db, ids)
    return [
        _row_to_manuscript(row, pools[row["manuscript_id"]], funds[row["manuscript_id"]])
        for row in rows
    ]


# ---------------------------------------------------------------------------
# Screening
# ---------------------------------------------------------------------------

def _add_error(errors: dict[str, list[str]], field: str, message: str) -> None:
    errors.setdefault(field, []).append(message)


def screen_submission(submission: ManuscriptSubmission, actor: Actor) -> dict[str, list[str]]:
    """Field-level checks on a submission payload. Empty dict = passed."""
    errors: dict[str, list[str]] = {}
    policy = settings.policy

    title = submission.title.strip()
    if not title:
        _add_error(errors, "title", "Title is required")
    elif len(title) > policy.max_title_length:
        _add_error(errors, "title", f"Title must be at most {policy.max_title_length} characters")

    abstract = submission.abstract.strip()
    if not abstract:
        _add_error(errors, "abstract", "Abstract is required")
    elif len(abstract) > policy.max_abstract_length:
        _add_error(errors, "abstract", f"Abstract must be at most {policy.max_abstract_length} characters")

    category = submission.category.strip()
    if not category:
        _add_error(errors, "category", "Category is required")
    elif len(category) > policy.max_category_length:
        _add_error(errors, "category", f"Category must be at most {policy.max_category_length} characters")

    if not submission.authors:
        _add_error(errors, "authors", "At least one author is required")
    elif any(not a.name.strip() for a in submission.authors):
        _add_error(errors, "authors", "Every author needs a name")

    cap = (
        policy.max_candidate_venues_anonymous
        if actor.is_anonymous
        else policy.max_candidate_venues_registered
    )
    venue_ids = list(dict.fromkeys(submission.venue_ids))
    if not venue_ids:
        _add_error(errors, "venue_ids", "Select at least one venue")
    elif len(venue_ids) > cap:
        _add_error(errors, "venue_ids", f"At most {cap} venues may be selected")

    return errors


# ---------------------------------------------------------------------------
# Submission
# ---------------------------------------------------------------------------

async def submit_manuscript(
    db: aiosqlite.Connection,
    actor: Actor,
    submission: ManuscriptSubmission,
    upload: UploadedFile,
    storage: BlobStorage,
    notifier: Notifier | None = None,
) -> Manuscript:
    """
    Submit a manuscript to one or more candidate venues.

    Journal submissions enter the candidate pool of every selected journal;
    a conference submission is bound to its single conference from the start.
    The file is stored before the manuscript row is committed.
    """
    policy = settings.policy
    errors = screen_submission(submission, actor)

    venue_ids = list(dict.fromkeys(submission.venue_ids))
    venues = await get_venues(db, venue_ids)
    missing = [vid for vid in venue_ids if vid not in venues]
    if missing:
        _add_error(errors, "venue_ids", f"Unknown venues: {', '.join(missing)}")
    if any(v.status != VenueStatus.ACTIVE for v in venues.values()):
        _add_error(errors, "venue_ids", "Archived venues do not accept submissions")
    kinds = {v.kind for v in venues.values()}
    if len(kinds) > 1:
        _add_error(errors, "venue_ids", "Journals and conferences cannot be mixed in one submission")
    kind = kinds.pop() if len(kinds) == 1 else VenueKind.JOURNAL
    if kind == VenueKind.CONFERENCE and len(venue_ids) != 1:
        _add_error(errors, "venue_ids", "A conference submission names exactly one conference")

    allowed = policy.anonymous_extensions if actor.is_anonymous else policy.registered_extensions
    try:
        check_upload_policy(upload, allowed)
    except ValidationFailure as exc:
        for field, messages in exc.field_errors.items():
            errors.setdefault(field, []).extend(messages)

    if errors:
        raise ValidationFailure("Submission failed screening", errors)

    limit = policy.daily_submissions_anonymous if actor.is_anonymous else policy.daily_submissions_registered
    now = utcnow()
    status = ManuscriptStatus.DRAFT if actor.is_anonymous else ManuscriptStatus.PENDING
    authors = [a.model_copy(update={"name": a.name.strip()}) for a in submission.authors]

    async with transaction(db):
        if not await consume_quota(db, actor.key, SUBMISSION, limit):
            raise ConflictError("Daily submission limit reached", {"limit": limit})

        content_hash = storage.fingerprint(upload.data)
        file_url = await find_existing_object(db, content_hash, storage)
        reused_file = file_url is not None
        if file_url is None:
            file_url = await storage.store(upload)

        manuscript = Manuscript(
            manuscript_id=await generate_manuscript_id(db),
            title=submission.title.strip(),
            author_display=", ".join(a.name for a in authors),
            authors=authors,
            abstract=submission.abstract.strip(),
            category=submission.category.strip(),
            manuscript_type=submission.manuscript_type,
            file_url=file_url,
            content_hash=content_hash,
            status=status,
            locked_conference_id=venue_ids[0] if kind == VenueKind.CONFERENCE else None,
            candidate_venue_ids=venue_ids if kind == VenueKind.JOURNAL else [],
            fund_ids=list(dict.fromkeys(submission.fund_ids)),
            uploader_id=actor.actor_id if isinstance(actor, RegisteredActor) else None,
            uploader_ip=actor.ip,
            created_at=now,
            updated_at=now,
            last_submitted_at=now,
        )
        await _insert_manuscript(db, manuscript)
        await add_to_pool(db, manuscript.manuscript_id, manuscript.candidate_venue_ids)
        await db.executemany(
            "INSERT INTO manuscript_fund_links (manuscript_id, fund_id) VALUES (?, ?)",
            [(manuscript.manuscript_id, fid) for fid in manuscript.fund_ids],
        )
        await log_event(
            db,
            AuditAction.MANUSCRIPT_SUBMITTED,
            actor_id=actor_label(actor),
            target_id=manuscript.manuscript_id,
            target_type="manuscript",
            details={
                "title": manuscript.title,
                "kind": kind.value,
                "venue_ids": venue_ids,
                "status": status.value,
                "reused_file": reused_file,
            },
            commit=False,
        )

    logger.info(
        "Manuscript %s submitted by %s to %d %s(s)",
        manuscript.manuscript_id, actor_label(actor), len(venue_ids), kind.value,
    )

    staff = await list_staff_ids(db, venue_ids)
    await notify_quietly(
        notifier,
        staff,
        "manuscript_submitted",
        {"manuscript_id": manuscript.manuscript_id, "title": manuscript.title, "venue_ids": venue_ids},
    )
    return manuscript


async def _insert_manuscript(db: aiosqlite.Connection, m: Manuscript) -> None:
    await db.execute(
        """
        INSERT INTO manuscripts (
            manuscript_id, title, author_display, authors, abstract, category,
            manuscript_type, file_url, content_hash, pending_cover_url, change_log,
            status, locked_journal_id, locked_conference_id, uploader_id, uploader_ip,
            popularity, aoi_score, created_at, updated_at, last_submitted_at, last_approved_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            m.manuscript_id,
            m.title,
            m.author_display,
            to_json([a.model_dump() for a in m.authors]),
            m.abstract,
            m.category,
            m.manuscript_type.value,
            m.file_url,
            m.content_hash,
            m.pending_cover_url,
            m.change_log,
            m.status.value,
            m.locked_journal_id,
            m.locked_conference_id,
            m.uploader_id,
            m.uploader_ip,
            m.popularity,
            m.aoi_score,
            m.created_at.isoformat(),
            m.updated_at.isoformat(),
            m.last_submitted_at.isoformat() if m.last_submitted_at else None,
            None,
        ),
    )


# ---------------------------------------------------------------------------
# Lookup / Query
# ---------------------------------------------------------------------------

async def get_manuscript(db: aiosqlite.Connection, manuscript_id: str) -> Manuscript | None:
    """Fetch a manuscript by id, with its pool and fund links."""
    results = await query_manuscripts(db, "manuscript_id = ?", (manuscript_id,), limit=1)
    return results[0] if results else None


async def require_manuscript(db: aiosqlite.Connection, manuscript_id: str) -> Manuscript:
    manuscript = await get_manuscript(db, manuscript_id)
    if manuscript is None:
        raise NotFoundError("Manuscript not found", {"manuscript_id": manuscript_id})
    return manuscript


async def list_manuscripts_by_uploader(
    db: aiosqlite.Connection,
    actor: Actor,
    limit: int = 100,
) -> list[Manuscript]:
    """The actor's own works, newest first."""
    if not isinstance(actor, RegisteredActor):
        return []
    return await query_manuscripts(db, "uploader_id = ?", (actor.actor_id,), limit=limit)


async def list_published(
    db: aiosqlite.Connection,
    venue_id: str | None = None,
    limit: int = 50,
) -> list[Manuscript]:
    if venue_id:
        return await query_manuscripts(
            db,
            "status = ? AND (locked_journal_id = ? OR locked_conference_id = ?)",
            (ManuscriptStatus.PUBLISHED.value, venue_id, venue_id),
            order_by="last_approved_at DESC",
            limit=limit,
        )
    return await query_manuscripts(
        db,
        "status = ?",
        (ManuscriptStatus.PUBLISHED.value,),
        order_by="last_approved_at DESC",
        limit=limit,
    )


# ---------------------------------------------------------------------------
# Author self-service
# ---------------------------------------------------------------------------

async def _require_own_manuscript(
    db: aiosqlite.Connection,
    actor: Actor,
    manuscript_id: str,
) -> Manuscript:
    manuscript = await require_manuscript(db, manuscript_id)
    if not isinstance(actor, RegisteredActor) or manuscript.uploader_id != actor.actor_id:
        raise AuthorizationError(
            "Only the uploading author may do this", {"manuscript_id": manuscript_id}
        )
    return manuscript


async def _set_status(
    db: aiosqlite.Connection,
    manuscript_id: str,
    status: ManuscriptStatus,
) -> None:
    await db.execute(
        "UPDATE manuscripts SET status = ?, updated_at = ? WHERE manuscript_id = ?",
        (status.value, utcnow().isoformat(), manuscript_id),
    )


async def withdraw_manuscript(
    db: aiosqlite.Connection,
    actor: Actor,
    manuscript_id: str,
) -> Manuscript:
    """Take down an admitted manuscript: Published -> Rejected."""
    manuscript = await _require_own_manuscript(db, actor, manuscript_id)
    if manuscript.status != ManuscriptStatus.PUBLISHED:
        raise ConflictError(
            "Only published manuscripts can be withdrawn",
            {"status": manuscript.status.value},
        )

    async with transaction(db):
        await _set_status(db, manuscript_id, ManuscriptStatus.REJECTED)
        await log_event(
            db,
            AuditAction.MANUSCRIPT_WITHDRAWN,
            actor_id=actor_label(actor),
            target_id=manuscript_id,
            target_type="manuscript",
            details={"title": manuscript.title},
            commit=False,
        )
    logger.info("Manuscript %s withdrawn by its author", manuscript_id)
    return await require_manuscript(db, manuscript_id)


async def delete_manuscript(
    db: aiosqlite.Connection,
    actor: Actor,
    manuscript_id: str,
    storage: BlobStorage | None = None,
) -> None:
    """Physically remove a manuscript and every dependent row, from any status."""
    manuscript = await _require_own_manuscript(db, actor, manuscript_id)

    async with transaction(db):
        await db.execute("DELETE FROM manuscripts WHERE manuscript_id = ?", (manuscript_id,))
        await log_event(
            db,
            AuditAction.MANUSCRIPT_DELETED,
            actor_id=actor_label(actor),
            target_id=manuscript_id,
            target_type="manuscript",
            details={"title": manuscript.title, "status": manuscript.status.value},
            commit=False,
        )
    logger.info("Manuscript %s deleted by its author", manuscript_id)

    if storage is not None and manuscript.file_url:
        async with db.execute(
            "SELECT 1 FROM manuscripts WHERE file_url = ? LIMIT 1", (manuscript.file_url,)
        ) as cursor:
            still_used = await cursor.fetchone() is not None
        if not still_used:
            try:
                await storage.delete(manuscript.file_url)
            except (OSError, ValueError):
                logger.warning("Could not remove blob %s", manuscript.file_url, exc_info=True)


async def request_cover_update(
    db: aiosqlite.Connection,
    actor: Actor,
    manuscript_id: str,
    cover_url: str,
) -> Manuscript:
    """Record a cover image the author wants; it stays pending until approved."""
    await _require_own_manuscript(db, actor, manuscript_id)
    parsed = urlparse(cover_url.strip())
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValidationFailure.for_field("cover_url", "Invalid image link")

    async with transaction(db):
        await db.execute(
            "UPDATE manuscripts SET pending_cover_url = ?, updated_at = ? WHERE manuscript_id = ?",
            (cover_url.strip(), utcnow().isoformat(), manuscript_id),
        )
        await log_event(
            db,
            AuditAction.COVER_UPDATE_REQUESTED,
            actor_id=actor_label(actor),
            target_id=manuscript_id,
            target_type="manuscript",
            details={"cover_url": cover_url.strip()},
            commit=False,
        )
    return await require_manuscript(db, manuscript_id)


async def request_takedown(
    db: aiosqlite.Connection,
    actor: Actor,
    manuscript_id: str,
) -> Manuscript:
    """Published -> PendingDeletion, awaiting a separate deletion approval."""
    manuscript = await _require_own_manuscript(db, actor, manuscript_id)
    if manuscript.status != ManuscriptStatus.PUBLISHED:
        raise ConflictError(
            "Only published manuscripts can be taken down",
            {"status": manuscript.status.value},
        )

    async with transaction(db):
        await _set_status(db, manuscript_id, ManuscriptStatus.PENDING_DELETION)
        await log_event(
            db,
            AuditAction.TAKEDOWN_REQUESTED,
            actor_id=actor_label(actor),
            target_id=manuscript_id,
            target_type="manuscript",
            commit=False,
        )
    return await require_manuscript(db, manuscript_id)
