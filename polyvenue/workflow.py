"""Workflow state machine: editorial decisions on manuscripts.

Admit is winner-take-all: the pool is cleared and the manuscript is locked to
exactly one venue. Reject removes a single venue from the pool; when the pool
runs dry the manuscript becomes rejected as a side effect. Conference
manuscripts have no pool, so rejecting one is always a hard reject.

Every transition runs inside ``database.transaction()`` together with the
FormalReviewLog and audit rows it produces. Two editors admitting the same
manuscript at once are not serialised here: the last write to the lock
columns wins.
"""

from __future__ import annotations

import logging
from pathlib import PurePosixPath
from typing import Any

import aiosqlite

from polyvenue.audit_service import log_event, record_review_log
from polyvenue.collaborators import Notifier, notify_quietly
from polyvenue.config import settings
from polyvenue.database import transaction, utcnow
from polyvenue.duplicate_detector import find_existing_object
from polyvenue.errors import AuthorizationError, ConflictError, ValidationFailure
from polyvenue.identity import Actor, RegisteredActor, actor_label
from polyvenue.manuscript_service import require_manuscript
from polyvenue.models import (
    AWAITING_DECISION,
    LOCK_COLUMNS,
    AuditAction,
    FormalDecision,
    Manuscript,
    ManuscriptEdits,
    ManuscriptStatus,
)
from polyvenue.permission_scope import can_access_manuscript, require_venue_scope
from polyvenue.review_thread import append_revision_submitted
from polyvenue.storage import BlobStorage, UploadedFile, check_upload_policy
from polyvenue.venue_service import clear_pool, get_pool, remove_from_pool

logger = logging.getLogger("polyvenue.workflow")


# ---------------------------------------------------------------------------
# Invariants
# ---------------------------------------------------------------------------

def check_invariants(manuscript: Manuscript) -> list[str]:
    """Names of the venue-linkage invariants this manuscript violates."""
    violations: list[str] = []
    locked = manuscript.locked_venue_id is not None
    pooled = bool(manuscript.candidate_venue_ids)

    if manuscript.locked_journal_id and manuscript.locked_conference_id:
        violations.append("single_lock")
    if locked and pooled:
        violations.append("lock_excludes_pool")
    if manuscript.status == ManuscriptStatus.PENDING and not locked and not pooled:
        violations.append("pending_needs_venue")
    if manuscript.status == ManuscriptStatus.PUBLISHED and (not locked or pooled):
        violations.append("published_is_locked")
    return violations


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------

def _require_awaiting_decision(manuscript: Manuscript) -> None:
    if manuscript.status not in AWAITING_DECISION:
        raise ConflictError(
            "Manuscript is not awaiting a decision",
            {"manuscript_id": manuscript.manuscript_id, "status": manuscript.status.value},
        )


async def _store_editor_file(
    db: aiosqlite.Connection,
    upload: UploadedFile,
    storage: BlobStorage | None,
) -> tuple[str, str]:
    """Validate and persist an editor-supplied final file; returns (url, hash)."""
    if storage is None:
        raise ValidationFailure.for_field("file", "File storage is not configured")
    check_upload_policy(upload, settings.policy.editor_file_extensions)
    content_hash = storage.fingerprint(upload.data)
    url = await find_existing_object(db, content_hash, storage)
    if url is None:
        url = await storage.store(upload)
    return url, content_hash


async def _apply_edits(
    db: aiosqlite.Connection,
    manuscript_id: str,
    edits: ManuscriptEdits | None,
    file: tuple[str, str] | None,
    extra: dict[str, Any] | None = None,
) -> list[str]:
    """Write metadata rewrites, file replacement and fund links. Never commits."""
    updates: dict[str, Any] = dict(extra or {})
    if edits is not None:
        if edits.title is not None:
            title = edits.title.strip()
            if not title:
                raise ValidationFailure.for_field("title", "Title is required")
            updates["title"] = title
        if edits.author_display is not None:
            updates["author_display"] = edits.author_display.strip()
        if edits.abstract is not None:
            updates["abstract"] = edits.abstract.strip()
    if file is not None:
        updates["file_url"], updates["content_hash"] = file
    updates["updated_at"] = utcnow().isoformat()

    set_clause = ", ".join(f"{k} = ?" for k in updates)
    await db.execute(
        f"UPDATE manuscripts SET {set_clause} WHERE manuscript_id = ?",
        [*updates.values(), manuscript_id],
    )

    if edits is not None and edits.fund_ids is not None:
        await _replace_fund_links(db, manuscript_id, edits.fund_ids)
    return sorted(k for k in updates if k != "updated_at")


async def _replace_fund_links(db: aiosqlite.Connection, manuscript_id: str, fund_ids: list[str]) -> None:
    await db.execute("DELETE FROM manuscript_fund_links WHERE manuscript_id = ?", (manuscript_id,))
    await db.executemany(
        "INSERT INTO manuscript_fund_links (manuscript_id, fund_id) VALUES (?, ?)",
        [(manuscript_id, fid) for fid in dict.fromkeys(fund_ids) if fid],
    )


async def _notify_uploader(
    notifier: Notifier | None,
    manuscript: Manuscript,
    kind: str,
    payload: dict[str, Any],
) -> None:
    if manuscript.uploader_id:
        await notify_quietly(notifier, [manuscript.uploader_id], kind, payload)


# ---------------------------------------------------------------------------
# Admit
# ---------------------------------------------------------------------------

async def admit_manuscript(
    db: aiosqlite.Connection,
    actor: Actor,
    manuscript_id: str,
    venue_id: str,
    feedback: str = "",
    edits: ManuscriptEdits | None = None,
    replacement: UploadedFile | None = None,
    storage: BlobStorage | None = None,
    notifier: Notifier | None = None,
) -> Manuscript:
    """
    Lock a manuscript to ``venue_id`` and publish it.

    The venue must be in the actor's scope and, unless the actor is a
    super-administrator, the manuscript must currently be under consideration
    there (in its pool or already bound to it).
    """
    manuscript = await require_manuscript(db, manuscript_id)
    venue = await require_venue_scope(db, actor, venue_id)
    _require_awaiting_decision(manuscript)

    if not actor.is_super_admin:
        considered = venue_id in manuscript.candidate_venue_ids or manuscript.locked_venue_id == venue_id
        if not considered:
            raise AuthorizationError(
                "Manuscript is not under consideration at this venue",
                {"manuscript_id": manuscript_id, "venue_id": venue_id},
            )

    now = utcnow().isoformat()
    lock_values = {column: None for column in LOCK_COLUMNS.values()}
    lock_values[venue.lock_column] = venue.venue_id
    note = feedback.strip() or settings.policy.default_approve_feedback

    async with transaction(db):
        file = await _store_editor_file(db, replacement, storage) if replacement else None
        await clear_pool(db, manuscript_id)
        changed = await _apply_edits(
            db,
            manuscript_id,
            edits,
            file,
            extra={
                "status": ManuscriptStatus.PUBLISHED.value,
                **lock_values,
                "last_approved_at": now,
            },
        )
        await record_review_log(
            db, manuscript_id, actor_label(actor), FormalDecision.APPROVE, note, venue_id=venue_id
        )
        await log_event(
            db,
            AuditAction.MANUSCRIPT_ADMITTED,
            actor_id=actor_label(actor),
            target_id=manuscript_id,
            target_type="manuscript",
            details={
                "venue_id": venue_id,
                "kind": venue.kind.value,
                "previous_pool": manuscript.candidate_venue_ids,
                "changed": changed,
            },
            commit=False,
        )

    logger.info("Manuscript %s admitted to %s %s by %s", manuscript_id, venue.kind.value, venue.code, actor_label(actor))
    await _notify_uploader(
        notifier, manuscript, "manuscript_admitted", {"manuscript_id": manuscript_id, "venue_id": venue_id}
    )
    return await require_manuscript(db, manuscript_id)


# ---------------------------------------------------------------------------
# Reject
# ---------------------------------------------------------------------------

async def reject_manuscript(
    db: aiosqlite.Connection,
    actor: Actor,
    manuscript_id: str,
    venue_id: str | None = None,
    feedback: str = "",
    notifier: Notifier | None = None,
) -> Manuscript:
    """
    Decline a manuscript on behalf of one venue.

    Journal manuscripts lose ``venue_id`` from their pool; an emptied pool
    rejects the manuscript without a second log entry. Conference manuscripts,
    and decisions by a super-administrator outside any venue, are hard rejects.
    """
    manuscript = await require_manuscript(db, manuscript_id)
    _require_awaiting_decision(manuscript)
    note = feedback.strip()

    conference_id = manuscript.locked_conference_id
    outside_venues = actor.is_super_admin and (not actor.memberships() or venue_id is None)

    if conference_id is not None or outside_venues:
        if conference_id is not None:
            if venue_id is not None and venue_id != conference_id:
                raise ConflictError(
                    "Manuscript was submitted to a different conference",
                    {"venue_id": venue_id, "conference_id": conference_id},
                )
            await require_venue_scope(db, actor, conference_id)
        return await _hard_reject(db, actor, manuscript, conference_id, note, notifier)

    if venue_id is None:
        raise ValidationFailure.for_field("venue_id", "Choose the venue you are deciding for")
    await require_venue_scope(db, actor, venue_id)
    if venue_id not in manuscript.candidate_venue_ids:
        raise ConflictError(
            "Venue is not in this manuscript's candidate pool",
            {"venue_id": venue_id, "pool": manuscript.candidate_venue_ids},
        )

    async with transaction(db):
        await remove_from_pool(db, manuscript_id, venue_id)
        await record_review_log(
            db, manuscript_id, actor_label(actor), FormalDecision.REJECT, note, venue_id=venue_id
        )
        remaining = await get_pool(db, manuscript_id)
        exhausted = not remaining
        if exhausted:
            await db.execute(
                "UPDATE manuscripts SET status = ?, updated_at = ? WHERE manuscript_id = ?",
                (ManuscriptStatus.REJECTED.value, utcnow().isoformat(), manuscript_id),
            )
        else:
            await db.execute(
                "UPDATE manuscripts SET updated_at = ? WHERE manuscript_id = ?",
                (utcnow().isoformat(), manuscript_id),
            )
        await log_event(
            db,
            AuditAction.VENUE_DECLINED,
            actor_id=actor_label(actor),
            target_id=manuscript_id,
            target_type="manuscript",
            details={"venue_id": venue_id, "remaining_pool": remaining, "pool_exhausted": exhausted},
            commit=False,
        )

    logger.info(
        "Venue %s declined %s (%d venue(s) left)", venue_id, manuscript_id, len(remaining)
    )
    if exhausted:
        await _notify_uploader(notifier, manuscript, "manuscript_rejected", {"manuscript_id": manuscript_id})
    return await require_manuscript(db, manuscript_id)


async def _hard_reject(
    db: aiosqlite.Connection,
    actor: Actor,
    manuscript: Manuscript,
    venue_id: str | None,
    note: str,
    notifier: Notifier | None,
) -> Manuscript:
    manuscript_id = manuscript.manuscript_id
    async with transaction(db):
        await clear_pool(db, manuscript_id)
        await db.execute(
            "UPDATE manuscripts SET status = ?, updated_at = ? WHERE manuscript_id = ?",
            (ManuscriptStatus.REJECTED.value, utcnow().isoformat(), manuscript_id),
        )
        await record_review_log(
            db, manuscript_id, actor_label(actor), FormalDecision.REJECT, note, venue_id=venue_id
        )
        await log_event(
            db,
            AuditAction.MANUSCRIPT_REJECTED,
            actor_id=actor_label(actor),
            target_id=manuscript_id,
            target_type="manuscript",
            details={"venue_id": venue_id, "pool": manuscript.candidate_venue_ids},
            commit=False,
        )
    logger.info("Manuscript %s rejected outright by %s", manuscript_id, actor_label(actor))
    await _notify_uploader(notifier, manuscript, "manuscript_rejected", {"manuscript_id": manuscript_id})
    return await require_manuscript(db, manuscript_id)


# ---------------------------------------------------------------------------
# Editor edits
# ---------------------------------------------------------------------------

async def _require_editorial_access(db: aiosqlite.Connection, actor: Actor, manuscript: Manuscript) -> None:
    if not await can_access_manuscript(db, actor, manuscript):
        raise AuthorizationError(
            "You are not an editor of this manuscript's venues",
            {"manuscript_id": manuscript.manuscript_id},
        )


async def edit_manuscript(
    db: aiosqlite.Connection,
    actor: Actor,
    manuscript_id: str,
    edits: ManuscriptEdits,
    replacement: UploadedFile | None = None,
    storage: BlobStorage | None = None,
) -> Manuscript:
    """Rewrite metadata (and optionally the final PDF) without changing status."""
    manuscript = await require_manuscript(db, manuscript_id)
    await _require_editorial_access(db, actor, manuscript)
    if not edits.has_changes() and replacement is None:
        raise ValidationFailure("Nothing to change", {"edits": ["Provide at least one field or a file"]})

    async with transaction(db):
        file = await _store_editor_file(db, replacement, storage) if replacement else None
        changed = await _apply_edits(db, manuscript_id, edits, file)
        await log_event(
            db,
            AuditAction.MANUSCRIPT_EDITED,
            actor_id=actor_label(actor),
            target_id=manuscript_id,
            target_type="manuscript",
            details={"changed": changed},
            commit=False,
        )
    return await require_manuscript(db, manuscript_id)


async def set_fund_links(
    db: aiosqlite.Connection,
    actor: Actor,
    manuscript_id: str,
    fund_ids: list[str],
) -> Manuscript:
    """Replace the manuscript's fund-application links with ``fund_ids``."""
    manuscript = await require_manuscript(db, manuscript_id)
    await _require_editorial_access(db, actor, manuscript)

    async with transaction(db):
        await _replace_fund_links(db, manuscript_id, fund_ids)
        await log_event(
            db,
            AuditAction.FUND_LINKS_SET,
            actor_id=actor_label(actor),
            target_id=manuscript_id,
            target_type="manuscript",
            details={"fund_ids": list(dict.fromkeys(fund_ids))},
            commit=False,
        )
    return await require_manuscript(db, manuscript_id)


# ---------------------------------------------------------------------------
# Resubmission
# ---------------------------------------------------------------------------

_CLOSED_STATUSES = {ManuscriptStatus.REJECTED, ManuscriptStatus.PENDING_DELETION}


async def resubmit_manuscript(
    db: aiosqlite.Connection,
    actor: Actor,
    manuscript_id: str,
    upload: UploadedFile,
    change_log: str,
    storage: BlobStorage,
) -> Manuscript:
    """
    Upload a new version of the manuscript file.

    The new file must carry the same extension as the stored one
    (case-insensitive). Status, pool and lock are unchanged; a
    RevisionSubmitted entry is appended to the review timeline.
    """
    if not isinstance(actor, RegisteredActor):
        raise AuthorizationError("Sign in to upload a new version")
    manuscript = await require_manuscript(db, manuscript_id)

    expected = PurePosixPath(manuscript.file_url).suffix.lower()
    if upload.extension != expected:
        raise ConflictError(
            f"New version must be a {expected or 'file without extension'} file",
            {"expected_extension": expected, "received_extension": upload.extension},
        )
    if manuscript.status in _CLOSED_STATUSES:
        raise ConflictError(
            "Manuscript no longer accepts new versions",
            {"status": manuscript.status.value},
        )
    check_upload_policy(upload, [expected])

    note = change_log.strip()
    async with transaction(db):
        content_hash = storage.fingerprint(upload.data)
        url = await find_existing_object(db, content_hash, storage, exclude_manuscript_id=manuscript_id)
        if url is None:
            url = await storage.store(upload)
        now = utcnow().isoformat()
        await db.execute(
            """
            UPDATE manuscripts
            SET file_url = ?, content_hash = ?, change_log = ?, last_submitted_at = ?, updated_at = ?
            WHERE manuscript_id = ?
            """,
            (url, content_hash, note, now, now, manuscript_id),
        )
        await append_revision_submitted(db, actor, manuscript_id, note)
        await log_event(
            db,
            AuditAction.REVISION_SUBMITTED,
            actor_id=actor_label(actor),
            target_id=manuscript_id,
            target_type="manuscript",
            details={"previous_hash": manuscript.content_hash, "content_hash": content_hash},
            commit=False,
        )

    logger.info("New version of %s uploaded by %s", manuscript_id, actor_label(actor))
    return await require_manuscript(db, manuscript_id)
