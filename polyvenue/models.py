"""Domain models for Polyvenue.

Every entity in the system is defined here as a Pydantic v2 model.
These models are shared across services, storage, and the REST API.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class ManuscriptStatus(str, Enum):
    """Manuscript lifecycle states."""

    DRAFT = "draft"  # Anonymous / unreviewed submission
    PENDING = "pending"  # Awaiting an editorial decision
    PUBLISHED = "published"  # Admitted, locked to exactly one venue
    REJECTED = "rejected"  # No venue wants it (or withdrawn by the author)
    PENDING_DELETION = "pending_deletion"  # Author requested takedown


# States from which an editor may still admit or reject.
AWAITING_DECISION = frozenset({ManuscriptStatus.DRAFT, ManuscriptStatus.PENDING})


class ManuscriptType(str, Enum):
    """Only one manuscript variant is currently active."""

    PAPER = "paper"


class VenueKind(str, Enum):
    JOURNAL = "journal"
    CONFERENCE = "conference"


class VenueStatus(str, Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"


class ActorRole(str, Enum):
    """Roles issued by the identity provider."""

    SUPER_ADMIN = "super_admin"  # Platform administrator
    ADMIN = "admin"  # Editor-in-chief of one venue
    REVIEWER = "reviewer"  # Editor of zero or more venues
    USER = "user"  # Author / reader


ADMIN_ROLES = frozenset({ActorRole.ADMIN, ActorRole.SUPER_ADMIN})


class ThreadKind(str, Enum):
    DISCUSSION = "discussion"  # Public comments on a published manuscript
    REVIEW = "review"  # Review-issue timeline during editorial review


class ReviewAction(str, Enum):
    """Tags carried by review thread entries."""

    COMMENT = "comment"
    MINOR_REVISION_REQUESTED = "minor_revision_requested"
    MAJOR_REVISION_REQUESTED = "major_revision_requested"
    REVISION_SUBMITTED = "revision_submitted"
    APPROVED = "approved"
    REJECTED = "rejected"


REVISION_REQUEST_ACTIONS = frozenset({
    ReviewAction.MINOR_REVISION_REQUESTED,
    ReviewAction.MAJOR_REVISION_REQUESTED,
})

# Tags that move the revision conversation forward; plain comments do not.
REVISION_STATE_ACTIONS = REVISION_REQUEST_ACTIONS | {
    ReviewAction.REVISION_SUBMITTED,
    ReviewAction.APPROVED,
    ReviewAction.REJECTED,
}


class FormalDecision(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"


class AoiVoteType(str, Enum):
    OVERREACH = "overreach"
    MISCONDUCT = "misconduct"


class AuditAction(str, Enum):
    """Actions tracked in the append-only audit log."""

    MANUSCRIPT_SUBMITTED = "manuscript_submitted"
    MANUSCRIPT_ADMITTED = "manuscript_admitted"
    MANUSCRIPT_REJECTED = "manuscript_rejected"
    VENUE_DECLINED = "venue_declined"
    MANUSCRIPT_EDITED = "manuscript_edited"
    REVISION_SUBMITTED = "revision_submitted"
    MANUSCRIPT_WITHDRAWN = "manuscript_withdrawn"
    MANUSCRIPT_DELETED = "manuscript_deleted"
    TAKEDOWN_REQUESTED = "takedown_requested"
    COVER_UPDATE_REQUESTED = "cover_update_requested"
    FUND_LINKS_SET = "fund_links_set"
    VENUE_CREATED = "venue_created"
    VENUE_UPDATED = "venue_updated"
    VENUE_DELETED = "venue_deleted"
    STAFF_CHANGED = "staff_changed"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _now() -> datetime:
    return datetime.now(timezone.utc)


def _uuid() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Venues
# ---------------------------------------------------------------------------

class Venue(BaseModel):
    """A journal or a conference; both kinds share one capability."""

    venue_id: str = Field(default_factory=_uuid)
    kind: VenueKind
    code: str
    name: str
    description: str = ""
    status: VenueStatus = VenueStatus.ACTIVE
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)

    @property
    def lock_column(self) -> str:
        """Manuscript column holding a lock to a venue of this kind."""
        return LOCK_COLUMNS[self.kind]


LOCK_COLUMNS: dict[VenueKind, str] = {
    VenueKind.JOURNAL: "locked_journal_id",
    VenueKind.CONFERENCE: "locked_conference_id",
}


class VenueCreate(BaseModel):
    kind: VenueKind
    code: str = Field(min_length=1, max_length=40)
    name: str = Field(min_length=1, max_length=200)
    description: str = Field(default="", max_length=4_000)
    status: VenueStatus = VenueStatus.ACTIVE


class VenueUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=4_000)
    status: VenueStatus | None = None


class UserRecord(BaseModel):
    """A registered user as known to the engine."""

    user_id: str
    name: str
    role: ActorRole = ActorRole.USER
    managed_venue_id: str | None = None
    created_at: datetime = Field(default_factory=_now)


# ---------------------------------------------------------------------------
# Manuscripts
# ---------------------------------------------------------------------------

CORRESPONDING_ROLE = "corresponding"


class AuthorEntry(BaseModel):
    """One entry of the structured author list."""

    name: str
    affiliation: str = ""
    roles: list[str] = Field(default_factory=list)  # e.g. "corresponding"
    contact: str | None = None

    @property
    def is_corresponding(self) -> bool:
        return CORRESPONDING_ROLE in self.roles


class Manuscript(BaseModel):
    """One submitted work and its venue linkage."""

    manuscript_id: str = ""  # MS-YYYY-NNNNN, assigned on submission
    title: str
    author_display: str = ""
    authors: list[AuthorEntry] = Field(default_factory=list)
    abstract: str = ""
    category: str = ""
    manuscript_type: ManuscriptType = ManuscriptType.PAPER

    file_url: str = ""
    content_hash: str = ""
    pending_cover_url: str | None = None
    change_log: str = ""

    status: ManuscriptStatus = ManuscriptStatus.DRAFT
    locked_journal_id: str | None = None
    locked_conference_id: str | None = None
    candidate_venue_ids: list[str] = Field(default_factory=list)
    fund_ids: list[str] = Field(default_factory=list)

    uploader_id: str | None = None
    uploader_ip: str = ""

    popularity: int = 0
    aoi_score: float = 0.0
    ai_rigor: float = 0.0
    ai_reproducibility: float = 0.0
    ai_standardization: float = 0.0
    ai_professionalism: float = 0.0
    ai_objectivity: float = 0.0

    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)
    last_submitted_at: datetime | None = None
    last_approved_at: datetime | None = None

    @property
    def locked_venue_id(self) -> str | None:
        return self.locked_journal_id or self.locked_conference_id

    @property
    def corresponding_authors(self) -> list[str]:
        return [a.name for a in self.authors if a.is_corresponding]


class ManuscriptSubmission(BaseModel):
    """Payload for submitting a new manuscript to one or more venues."""

    title: str
    authors: list[AuthorEntry] = Field(default_factory=list)
    abstract: str
    category: str
    manuscript_type: ManuscriptType = ManuscriptType.PAPER
    venue_ids: list[str] = Field(default_factory=list)
    fund_ids: list[str] = Field(default_factory=list)


class ManuscriptEdits(BaseModel):
    """Editor-supplied metadata rewrites, applied on admit or standalone edit."""

    title: str | None = Field(default=None, min_length=1, max_length=500)
    author_display: str | None = Field(default=None, max_length=1_000)
    abstract: str | None = Field(default=None, max_length=2_000)
    fund_ids: list[str] | None = None

    def has_changes(self) -> bool:
        return any(v is not None for v in self.model_dump().values())


# ---------------------------------------------------------------------------
# Review thread
# ---------------------------------------------------------------------------

class ReviewEvent(BaseModel):
    """One immutable entry on a manuscript's discussion or review timeline."""

    event_id: str = Field(default_factory=_uuid)
    manuscript_id: str
    thread: ThreadKind
    parent_id: str | None = None
    actor_id: str | None = None  # registered user, None for anonymous
    guest_ip: str | None = None
    guest_name: str | None = None
    action: ReviewAction = ReviewAction.COMMENT
    body: str = ""
    created_at: datetime = Field(default_factory=_now)


class ThreadEntry(BaseModel):
    """A review event as rendered to a reader."""

    event: ReviewEvent
    display_name: str
    like_count: int = 0
    liked_by_viewer: bool = False
    replies: list[ThreadEntry] = Field(default_factory=list)


class FormalReviewLog(BaseModel):
    """Compliance record of an approve / reject decision."""

    log_id: str = Field(default_factory=_uuid)
    manuscript_id: str
    reviewer_id: str
    venue_id: str | None = None
    action: FormalDecision
    feedback: str = ""
    created_at: datetime = Field(default_factory=_now)


# ---------------------------------------------------------------------------
# Votes
# ---------------------------------------------------------------------------

class AoiVote(BaseModel):
    manuscript_id: str
    ip: str
    user_id: str | None = None
    vote_type: AoiVoteType
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)


# ---------------------------------------------------------------------------
# Audit Event (Immutable Event Log)
# ---------------------------------------------------------------------------

class AuditEvent(BaseModel):
    """Append-only event for the system audit trail."""

    event_id: str = Field(default_factory=_uuid)
    action: AuditAction
    actor_id: str = ""  # user id or anonymous pseudonym
    target_id: str = ""
    target_type: str = ""
    details: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=_now)


ThreadEntry.model_rebuild()
