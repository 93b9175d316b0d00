"""REST API: FastAPI endpoints over the editorial engine.

Mutating endpoints answer with an OperationResult; scoped failures raised by
the services are converted by the exception handlers below, so a failed
operation never leaks a stack trace or a half-applied state.
"""

from __future__ import annotations

import aiosqlite
from fastapi import Depends, FastAPI, File, Form, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel, Field, ValidationError
from starlette.middleware.trustedhost import TrustedHostMiddleware

from polyvenue.audit_service import get_events_for_target, get_recent_events, get_review_logs
from polyvenue.auth import SessionContext, enforce_read_access, get_session
from polyvenue.collaborators import (
    FundRegistry,
    InMemoryFundRegistry,
    LocalScoringService,
    LoggingNotifier,
    Notifier,
    ScoringService,
)
from polyvenue.config import settings
from polyvenue.database import get_db
from polyvenue.duplicate_detector import find_duplicates, is_duplicate
from polyvenue.errors import (
    AuthorizationError,
    NotFoundError,
    OperationResult,
    PolyvenueError,
    UpstreamError,
    ValidationFailure,
)
from polyvenue.identity import Actor, RegisteredActor, resolve_actor, upsert_user
from polyvenue.manuscript_service import (
    delete_manuscript,
    list_manuscripts_by_uploader,
    list_published,
    request_cover_update,
    request_takedown,
    require_manuscript,
    submit_manuscript,
    withdraw_manuscript,
)
from polyvenue.middleware import (
    RateLimitMiddleware,
    RequestLoggingMiddleware,
    RequestSizeLimitMiddleware,
    SecurityHeadersMiddleware,
)
from polyvenue.models import (
    ActorRole,
    AoiVoteType,
    AuditAction,
    ManuscriptEdits,
    ManuscriptStatus,
    ManuscriptSubmission,
    ReviewAction,
    UserRecord,
    VenueCreate,
    VenueKind,
    VenueStatus,
    VenueUpdate,
)
from polyvenue.permission_scope import can_access_manuscript, list_decision_history, list_review_queue
from polyvenue.review_thread import (
    delete_event,
    get_discussion,
    get_review_timeline,
    is_revision_requested,
    post_comment,
    post_review_action,
    toggle_like,
)
from polyvenue.storage import LOCAL_URL_PREFIX, BlobStorage, LocalBlobStorage, UploadedFile
from polyvenue.venue_service import (
    add_reviewer,
    create_venue,
    delete_venue,
    get_editor_in_chief_id,
    list_reviewer_ids,
    list_venues,
    remove_reviewer,
    require_venue,
    set_editor_in_chief,
    update_venue,
)
from polyvenue.vote_service import cast_aoi_vote, vote_summary
from polyvenue.workflow import (
    admit_manuscript,
    check_invariants,
    edit_manuscript,
    reject_manuscript,
    resubmit_manuscript,
    set_fund_links,
)

app = FastAPI(
    title="Polyvenue",
    description="Multi-venue manuscript review and admission engine",
    version="0.1.0",
)

app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.server.trusted_hosts)
app.add_middleware(RequestSizeLimitMiddleware, max_bytes=settings.server.max_request_bytes)
app.add_middleware(SecurityHeadersMiddleware)

if settings.rate_limit.enabled:
    app.add_middleware(
        RateLimitMiddleware,
        requests_per_minute=settings.rate_limit.requests_per_minute,
    )

if settings.server.cors_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.server.cors_origins,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )

app.add_middleware(RequestLoggingMiddleware)


# ---------------------------------------------------------------------------
# Error translation
# ---------------------------------------------------------------------------

@app.exception_handler(PolyvenueError)
async def _polyvenue_error_handler(request: Request, exc: PolyvenueError):
    return JSONResponse(
        status_code=exc.http_status,
        content=OperationResult.from_error(exc).model_dump(mode="json"),
    )


@app.exception_handler(ValidationError)
async def _payload_error_handler(request: Request, exc: ValidationError):
    field_errors: dict[str, list[str]] = {}
    for err in exc.errors():
        field = ".".join(str(part) for part in err["loc"]) or "payload"
        field_errors.setdefault(field, []).append(err["msg"])
    result = OperationResult(
        ok=False, code="validation_failed", message="Invalid payload", field_errors=field_errors
    )
    return JSONResponse(status_code=422, content=result.model_dump(mode="json"))


@app.exception_handler(aiosqlite.Error)
async def _datastore_error_handler(request: Request, exc: aiosqlite.Error):
    result = OperationResult.from_error(UpstreamError("Datastore unavailable"))
    return JSONResponse(status_code=502, content=result.model_dump(mode="json"))


def _ok(data=None) -> dict:
    if hasattr(data, "model_dump"):
        data = data.model_dump(mode="json")
    return OperationResult(ok=True, data=data).model_dump(mode="json")


def _clamp_limit(limit: int, default: int = 50, max_value: int = 200) -> int:
    if limit <= 0:
        return default
    return min(limit, max_value)


# ---------------------------------------------------------------------------
# Collaborators (overridable through app.dependency_overrides)
# ---------------------------------------------------------------------------

_notifier = LoggingNotifier()
_scoring = LocalScoringService()
_fund_registry = InMemoryFundRegistry()


def get_blob_storage() -> BlobStorage:
    return LocalBlobStorage(settings.uploads_path)


def get_notifier() -> Notifier:
    return _notifier


def get_scoring() -> ScoringService:
    return _scoring


def get_fund_registry() -> FundRegistry:
    return _fund_registry


async def _actor(db: aiosqlite.Connection, session: SessionContext) -> Actor:
    return await resolve_actor(db, session.user_id, session.ip)


async def _read_upload(file: UploadFile | None) -> UploadedFile | None:
    """Buffer an upload; anything past the size limit fails the policy check later."""
    if file is None or not file.filename:
        return None
    data = await file.read(settings.policy.max_upload_bytes + 1)
    return UploadedFile(filename=file.filename, data=data)


def _parse_edits(raw: str | None) -> ManuscriptEdits | None:
    if not raw:
        return None
    return ManuscriptEdits.model_validate_json(raw)


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

class UserUpsertRequest(BaseModel):
    user_id: str = Field(min_length=1, max_length=200)
    name: str = Field(min_length=1, max_length=200)
    role: ActorRole = ActorRole.USER


class StaffRequest(BaseModel):
    user_id: str | None = None


class RejectRequest(BaseModel):
    venue_id: str | None = None
    feedback: str = Field(default="", max_length=10_000)


class FundLinksRequest(BaseModel):
    fund_ids: list[str] = Field(default_factory=list, max_length=100)


class CoverRequest(BaseModel):
    cover_url: str = Field(min_length=1, max_length=2_000)


class CommentRequest(BaseModel):
    body: str
    parent_id: str | None = None


class ReviewActionRequest(BaseModel):
    action: ReviewAction = ReviewAction.COMMENT
    body: str = ""


class VoteRequest(BaseModel):
    vote_type: AoiVoteType


# ---------------------------------------------------------------------------
# Users (mirror of the identity provider)
# ---------------------------------------------------------------------------

@app.put("/api/users", tags=["users"])
async def api_upsert_user(req: UserUpsertRequest, session: SessionContext = Depends(get_session)):
    db = await get_db()
    try:
        actor = await _actor(db, session)
        if not actor.is_super_admin:
            raise AuthorizationError("Only a super-admin may register users")
        user = await upsert_user(db, UserRecord(user_id=req.user_id, name=req.name, role=req.role))
        return _ok(user)
    finally:
        await db.close()


@app.get("/api/me", tags=["users"])
async def api_me(session: SessionContext = Depends(get_session)):
    db = await get_db()
    try:
        actor = await _actor(db, session)
        return {
            "anonymous": actor.is_anonymous,
            "display_name": actor.display_name,
            "role": actor.role.value if isinstance(actor, RegisteredActor) else None,
            "memberships": sorted(actor.memberships()),
        }
    finally:
        await db.close()


# ---------------------------------------------------------------------------
# Venue registry and staff
# ---------------------------------------------------------------------------

@app.get("/api/venues", tags=["venues"])
async def api_list_venues(
    kind: VenueKind | None = None,
    status: VenueStatus | None = None,
    session: SessionContext = Depends(get_session),
):
    enforce_read_access(session)
    db = await get_db()
    try:
        return [v.model_dump(mode="json") for v in await list_venues(db, kind=kind, status=status)]
    finally:
        await db.close()


@app.post("/api/venues", tags=["venues"])
async def api_create_venue(req: VenueCreate, session: SessionContext = Depends(get_session)):
    db = await get_db()
    try:
        actor = await _actor(db, session)
        return _ok(await create_venue(db, actor, req))
    finally:
        await db.close()


@app.get("/api/venues/{venue_id}", tags=["venues"])
async def api_get_venue(venue_id: str, session: SessionContext = Depends(get_session)):
    enforce_read_access(session)
    db = await get_db()
    try:
        venue = await require_venue(db, venue_id)
        return {
            "venue": venue.model_dump(mode="json"),
            "editor_in_chief": await get_editor_in_chief_id(db, venue_id),
            "reviewers": await list_reviewer_ids(db, venue_id),
        }
    finally:
        await db.close()


@app.patch("/api/venues/{venue_id}", tags=["venues"])
async def api_update_venue(
    venue_id: str,
    req: VenueUpdate,
    session: SessionContext = Depends(get_session),
):
    db = await get_db()
    try:
        actor = await _actor(db, session)
        return _ok(await update_venue(db, actor, venue_id, req))
    finally:
        await db.close()


@app.delete("/api/venues/{venue_id}", tags=["venues"])
async def api_delete_venue(venue_id: str, session: SessionContext = Depends(get_session)):
    db = await get_db()
    try:
        actor = await _actor(db, session)
        await delete_venue(db, actor, venue_id)
        return _ok({"venue_id": venue_id})
    finally:
        await db.close()


@app.put("/api/venues/{venue_id}/editor-in-chief", tags=["venues"])
async def api_set_editor_in_chief(
    venue_id: str,
    req: StaffRequest,
    session: SessionContext = Depends(get_session),
):
    db = await get_db()
    try:
        actor = await _actor(db, session)
        user_id = await set_editor_in_chief(db, actor, venue_id, req.user_id)
        return _ok({"venue_id": venue_id, "editor_in_chief": user_id})
    finally:
        await db.close()


@app.post("/api/venues/{venue_id}/reviewers", tags=["venues"])
async def api_add_reviewer(
    venue_id: str,
    req: StaffRequest,
    session: SessionContext = Depends(get_session),
):
    if not req.user_id:
        raise ValidationFailure.for_field("user_id", "user_id is required")
    db = await get_db()
    try:
        actor = await _actor(db, session)
        await add_reviewer(db, actor, venue_id, req.user_id)
        return _ok({"venue_id": venue_id, "reviewers": await list_reviewer_ids(db, venue_id)})
    finally:
        await db.close()


@app.delete("/api/venues/{venue_id}/reviewers/{user_id}", tags=["venues"])
async def api_remove_reviewer(
    venue_id: str,
    user_id: str,
    session: SessionContext = Depends(get_session),
):
    db = await get_db()
    try:
        actor = await _actor(db, session)
        await remove_reviewer(db, actor, venue_id, user_id)
        return _ok({"venue_id": venue_id, "reviewers": await list_reviewer_ids(db, venue_id)})
    finally:
        await db.close()


# ---------------------------------------------------------------------------
# Manuscript intake and author self-service
# ---------------------------------------------------------------------------

@app.post("/api/manuscripts", tags=["manuscripts"])
async def api_submit_manuscript(
    payload: str = Form(...),
    file: UploadFile = File(...),
    session: SessionContext = Depends(get_session),
    storage: BlobStorage = Depends(get_blob_storage),
    notifier: Notifier = Depends(get_notifier),
):
    """Submit a manuscript: ``payload`` is the JSON submission, ``file`` the document."""
    submission = ManuscriptSubmission.model_validate_json(payload)
    upload = await _read_upload(file) or UploadedFile(filename="", data=b"")
    db = await get_db()
    try:
        actor = await _actor(db, session)
        manuscript = await submit_manuscript(db, actor, submission, upload, storage, notifier=notifier)
        return _ok(manuscript)
    finally:
        await db.close()


@app.get("/api/manuscripts", tags=["manuscripts"])
async def api_list_published(
    venue_id: str | None = None,
    limit: int = 50,
    session: SessionContext = Depends(get_session),
):
    enforce_read_access(session)
    db = await get_db()
    try:
        items = await list_published(db, venue_id=venue_id, limit=_clamp_limit(limit))
        return [m.model_dump(mode="json") for m in items]
    finally:
        await db.close()


@app.get("/api/manuscripts/mine", tags=["manuscripts"])
async def api_my_manuscripts(limit: int = 100, session: SessionContext = Depends(get_session)):
    db = await get_db()
    try:
        actor = await _actor(db, session)
        items = await list_manuscripts_by_uploader(db, actor, limit=_clamp_limit(limit, default=100))
        return [m.model_dump(mode="json") for m in items]
    finally:
        await db.close()


@app.get("/api/manuscripts/{manuscript_id}", tags=["manuscripts"])
async def api_get_manuscript(manuscript_id: str, session: SessionContext = Depends(get_session)):
    enforce_read_access(session)
    db = await get_db()
    try:
        manuscript = await require_manuscript(db, manuscript_id)
        return {
            "manuscript": manuscript.model_dump(mode="json"),
            "duplicate": await is_duplicate(db, manuscript_id),
            "revision_requested": await is_revision_requested(db, manuscript_id),
            "votes": await vote_summary(db, manuscript_id),
        }
    finally:
        await db.close()


@app.post("/api/manuscripts/{manuscript_id}/withdraw", tags=["manuscripts"])
async def api_withdraw_manuscript(manuscript_id: str, session: SessionContext = Depends(get_session)):
    db = await get_db()
    try:
        actor = await _actor(db, session)
        return _ok(await withdraw_manuscript(db, actor, manuscript_id))
    finally:
        await db.close()


@app.delete("/api/manuscripts/{manuscript_id}", tags=["manuscripts"])
async def api_delete_manuscript(
    manuscript_id: str,
    session: SessionContext = Depends(get_session),
    storage: BlobStorage = Depends(get_blob_storage),
):
    db = await get_db()
    try:
        actor = await _actor(db, session)
        await delete_manuscript(db, actor, manuscript_id, storage=storage)
        return _ok({"manuscript_id": manuscript_id})
    finally:
        await db.close()


@app.post("/api/manuscripts/{manuscript_id}/cover", tags=["manuscripts"])
async def api_request_cover(
    manuscript_id: str,
    req: CoverRequest,
    session: SessionContext = Depends(get_session),
):
    db = await get_db()
    try:
        actor = await _actor(db, session)
        return _ok(await request_cover_update(db, actor, manuscript_id, req.cover_url))
    finally:
        await db.close()


@app.post("/api/manuscripts/{manuscript_id}/takedown", tags=["manuscripts"])
async def api_request_takedown(manuscript_id: str, session: SessionContext = Depends(get_session)):
    db = await get_db()
    try:
        actor = await _actor(db, session)
        return _ok(await request_takedown(db, actor, manuscript_id))
    finally:
        await db.close()


@app.post("/api/manuscripts/{manuscript_id}/revisions", tags=["manuscripts"])
async def api_resubmit_manuscript(
    manuscript_id: str,
    change_log: str = Form(""),
    file: UploadFile = File(...),
    session: SessionContext = Depends(get_session),
    storage: BlobStorage = Depends(get_blob_storage),
):
    upload = await _read_upload(file) or UploadedFile(filename="", data=b"")
    db = await get_db()
    try:
        actor = await _actor(db, session)
        return _ok(await resubmit_manuscript(db, actor, manuscript_id, upload, change_log, storage))
    finally:
        await db.close()


@app.get("/api/manuscripts/{manuscript_id}/duplicates", tags=["manuscripts"])
async def api_find_duplicates(manuscript_id: str, session: SessionContext = Depends(get_session)):
    enforce_read_access(session)
    db = await get_db()
    try:
        await require_manuscript(db, manuscript_id)
        return {"manuscript_id": manuscript_id, "duplicates": await find_duplicates(db, manuscript_id)}
    finally:
        await db.close()


# ---------------------------------------------------------------------------
# Editorial decisions
# ---------------------------------------------------------------------------

@app.get("/api/editorial/queue", tags=["editorial"])
async def api_review_queue(
    kind: VenueKind = VenueKind.JOURNAL,
    limit: int = 100,
    session: SessionContext = Depends(get_session),
):
    db = await get_db()
    try:
        actor = await _actor(db, session)
        items = await list_review_queue(db, actor, kind=kind, limit=_clamp_limit(limit, default=100))
        return [m.model_dump(mode="json") for m in items]
    finally:
        await db.close()


@app.get("/api/editorial/history", tags=["editorial"])
async def api_decision_history(limit: int = 100, session: SessionContext = Depends(get_session)):
    db = await get_db()
    try:
        actor = await _actor(db, session)
        logs = await list_decision_history(db, actor, limit=_clamp_limit(limit, default=100))
        return [log.model_dump(mode="json") for log in logs]
    finally:
        await db.close()


@app.post("/api/manuscripts/{manuscript_id}/admit", tags=["editorial"])
async def api_admit_manuscript(
    manuscript_id: str,
    venue_id: str = Form(...),
    feedback: str = Form(""),
    edits: str | None = Form(None),
    file: UploadFile | None = File(None),
    session: SessionContext = Depends(get_session),
    storage: BlobStorage = Depends(get_blob_storage),
    notifier: Notifier = Depends(get_notifier),
):
    """Admit into ``venue_id``; ``edits`` is optional JSON, ``file`` an optional final PDF."""
    parsed_edits = _parse_edits(edits)
    replacement = await _read_upload(file)
    db = await get_db()
    try:
        actor = await _actor(db, session)
        manuscript = await admit_manuscript(
            db,
            actor,
            manuscript_id,
            venue_id,
            feedback=feedback,
            edits=parsed_edits,
            replacement=replacement,
            storage=storage,
            notifier=notifier,
        )
        return _ok(manuscript)
    finally:
        await db.close()


@app.post("/api/manuscripts/{manuscript_id}/reject", tags=["editorial"])
async def api_reject_manuscript(
    manuscript_id: str,
    req: RejectRequest,
    session: SessionContext = Depends(get_session),
    notifier: Notifier = Depends(get_notifier),
):
    db = await get_db()
    try:
        actor = await _actor(db, session)
        manuscript = await reject_manuscript(
            db, actor, manuscript_id, venue_id=req.venue_id, feedback=req.feedback, notifier=notifier
        )
        return _ok(manuscript)
    finally:
        await db.close()


@app.post("/api/manuscripts/{manuscript_id}/edit", tags=["editorial"])
async def api_edit_manuscript(
    manuscript_id: str,
    edits: str = Form("{}"),
    file: UploadFile | None = File(None),
    session: SessionContext = Depends(get_session),
    storage: BlobStorage = Depends(get_blob_storage),
):
    parsed_edits = _parse_edits(edits) or ManuscriptEdits()
    replacement = await _read_upload(file)
    db = await get_db()
    try:
        actor = await _actor(db, session)
        manuscript = await edit_manuscript(
            db, actor, manuscript_id, parsed_edits, replacement=replacement, storage=storage
        )
        return _ok(manuscript)
    finally:
        await db.close()


@app.put("/api/manuscripts/{manuscript_id}/funds", tags=["editorial"])
async def api_set_fund_links(
    manuscript_id: str,
    req: FundLinksRequest,
    session: SessionContext = Depends(get_session),
):
    db = await get_db()
    try:
        actor = await _actor(db, session)
        return _ok(await set_fund_links(db, actor, manuscript_id, req.fund_ids))
    finally:
        await db.close()


@app.get("/api/manuscripts/{manuscript_id}/review-logs", tags=["editorial"])
async def api_review_logs(manuscript_id: str, session: SessionContext = Depends(get_session)):
    db = await get_db()
    try:
        actor = await _actor(db, session)
        manuscript = await require_manuscript(db, manuscript_id)
        if not await can_access_manuscript(db, actor, manuscript):
            raise AuthorizationError("Manuscript is outside your venues")
        return [log.model_dump(mode="json") for log in await get_review_logs(db, manuscript_id)]
    finally:
        await db.close()


@app.get("/api/manuscripts/{manuscript_id}/invariants", tags=["editorial"])
async def api_check_invariants(manuscript_id: str, session: SessionContext = Depends(get_session)):
    enforce_read_access(session)
    db = await get_db()
    try:
        manuscript = await require_manuscript(db, manuscript_id)
        violations = check_invariants(manuscript)
        return {"manuscript_id": manuscript_id, "ok": not violations, "violations": violations}
    finally:
        await db.close()


# ---------------------------------------------------------------------------
# Discussion and review threads
# ---------------------------------------------------------------------------

@app.get("/api/manuscripts/{manuscript_id}/discussion", tags=["threads"])
async def api_get_discussion(manuscript_id: str, session: SessionContext = Depends(get_session)):
    enforce_read_access(session)
    db = await get_db()
    try:
        actor = await _actor(db, session)
        await require_manuscript(db, manuscript_id)
        entries = await get_discussion(db, manuscript_id, viewer=actor)
        return [e.model_dump(mode="json") for e in entries]
    finally:
        await db.close()


@app.post("/api/manuscripts/{manuscript_id}/discussion", tags=["threads"])
async def api_post_comment(
    manuscript_id: str,
    req: CommentRequest,
    session: SessionContext = Depends(get_session),
):
    db = await get_db()
    try:
        actor = await _actor(db, session)
        return _ok(await post_comment(db, actor, manuscript_id, req.body, parent_id=req.parent_id))
    finally:
        await db.close()


@app.get("/api/manuscripts/{manuscript_id}/review-timeline", tags=["threads"])
async def api_get_review_timeline(manuscript_id: str, session: SessionContext = Depends(get_session)):
    enforce_read_access(session)
    db = await get_db()
    try:
        actor = await _actor(db, session)
        await require_manuscript(db, manuscript_id)
        entries = await get_review_timeline(db, manuscript_id, viewer=actor)
        return {
            "entries": [e.model_dump(mode="json") for e in entries],
            "revision_requested": await is_revision_requested(db, manuscript_id),
        }
    finally:
        await db.close()


@app.post("/api/manuscripts/{manuscript_id}/review-timeline", tags=["threads"])
async def api_post_review_action(
    manuscript_id: str,
    req: ReviewActionRequest,
    session: SessionContext = Depends(get_session),
):
    db = await get_db()
    try:
        actor = await _actor(db, session)
        return _ok(await post_review_action(db, actor, manuscript_id, req.action, req.body))
    finally:
        await db.close()


@app.post("/api/events/{event_id}/like", tags=["threads"])
async def api_toggle_like(event_id: str, session: SessionContext = Depends(get_session)):
    db = await get_db()
    try:
        actor = await _actor(db, session)
        liked = await toggle_like(db, actor, event_id)
        return _ok({"event_id": event_id, "liked": liked})
    finally:
        await db.close()


@app.delete("/api/events/{event_id}", tags=["threads"])
async def api_delete_event(event_id: str, session: SessionContext = Depends(get_session)):
    db = await get_db()
    try:
        actor = await _actor(db, session)
        await delete_event(db, actor, event_id)
        return _ok({"event_id": event_id})
    finally:
        await db.close()


# ---------------------------------------------------------------------------
# Votes and funds
# ---------------------------------------------------------------------------

@app.post("/api/manuscripts/{manuscript_id}/votes", tags=["votes"])
async def api_cast_vote(
    manuscript_id: str,
    req: VoteRequest,
    session: SessionContext = Depends(get_session),
    scoring: ScoringService = Depends(get_scoring),
):
    db = await get_db()
    try:
        actor = await _actor(db, session)
        vote = await cast_aoi_vote(db, actor, manuscript_id, req.vote_type, scoring=scoring)
        return _ok({"vote": vote.model_dump(mode="json"), "summary": await vote_summary(db, manuscript_id)})
    finally:
        await db.close()


@app.get("/api/manuscripts/{manuscript_id}/votes", tags=["votes"])
async def api_vote_summary(manuscript_id: str, session: SessionContext = Depends(get_session)):
    enforce_read_access(session)
    db = await get_db()
    try:
        await require_manuscript(db, manuscript_id)
        return await vote_summary(db, manuscript_id)
    finally:
        await db.close()


@app.get("/api/funds", tags=["funds"])
async def api_list_funds(
    scope: str | None = None,
    session: SessionContext = Depends(get_session),
    registry: FundRegistry = Depends(get_fund_registry),
):
    enforce_read_access(session)
    funds = await registry.list_approved(scope)
    return [
        {"fund_id": f.fund_id, "title": f.title, "serial_no": f.serial_no, "scope": f.scope}
        for f in funds
    ]


# ---------------------------------------------------------------------------
# Audit, files, stats
# ---------------------------------------------------------------------------

@app.get("/api/audit", tags=["audit"])
async def api_audit(
    target_id: str | None = None,
    action: AuditAction | None = None,
    limit: int = 50,
    session: SessionContext = Depends(get_session),
):
    db = await get_db()
    try:
        actor = await _actor(db, session)
        if not actor.is_super_admin:
            raise AuthorizationError("Only a super-admin may read the audit log")
        limit = _clamp_limit(limit)
        if target_id:
            return await get_events_for_target(db, target_id, limit=limit)
        return await get_recent_events(db, action=action, limit=limit)
    finally:
        await db.close()


@app.get(LOCAL_URL_PREFIX + "{key}", tags=["files"])
async def api_download_file(
    key: str,
    session: SessionContext = Depends(get_session),
    storage: BlobStorage = Depends(get_blob_storage),
):
    enforce_read_access(session)
    if not isinstance(storage, LocalBlobStorage):
        raise NotFoundError("File not served by this node")
    try:
        path = storage.path_for_url(LOCAL_URL_PREFIX + key)
    except ValueError as exc:
        raise NotFoundError("File not found") from exc
    if not path.is_file():
        raise NotFoundError("File not found")
    return FileResponse(path)


@app.get("/api/stats", tags=["stats"])
async def api_stats(session: SessionContext = Depends(get_session)):
    enforce_read_access(session)
    db = await get_db()
    try:
        by_status = {s.value: 0 for s in ManuscriptStatus}
        async with db.execute("SELECT status, COUNT(*) FROM manuscripts GROUP BY status") as cursor:
            for row in await cursor.fetchall():
                by_status[row[0]] = row[1]
        async with db.execute("SELECT kind, COUNT(*) FROM venues GROUP BY kind") as cursor:
            by_kind = {row[0]: row[1] for row in await cursor.fetchall()}
        return {
            "total_manuscripts": sum(by_status.values()),
            "manuscripts_by_status": by_status,
            "venues_by_kind": by_kind,
        }
    finally:
        await db.close()


@app.get("/healthz", tags=["ops"])
async def healthz():
    """Liveness probe."""
    return {"status": "ok"}


@app.get("/readyz", tags=["ops"])
async def readyz():
    """Readiness probe (DB connectivity)."""
    db = await get_db()
    try:
        async with db.execute("SELECT 1") as cursor:
            _ = await cursor.fetchone()
        return {"status": "ready"}
    finally:
        await db.close()
