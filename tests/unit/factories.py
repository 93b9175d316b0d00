"""Shared builders for the unit tests: in-memory database, users, venues, uploads."""

import aiosqlite

from polyvenue.database import init_schema
from polyvenue.identity import AnonymousActor, RegisteredActor, load_registered_actor, upsert_user
from polyvenue.manuscript_service import submit_manuscript
from polyvenue.models import (
    ActorRole,
    AuthorEntry,
    Manuscript,
    ManuscriptSubmission,
    UserRecord,
    Venue,
    VenueCreate,
    VenueKind,
)
from polyvenue.storage import UploadedFile
from polyvenue.venue_service import add_reviewer, create_venue, set_editor_in_chief

PDF_BYTES = b"%PDF-1.4\n1 0 obj << /Type /Catalog >> endobj\n%%EOF"


async def memory_db() -> aiosqlite.Connection:
    db = await aiosqlite.connect(":memory:")
    await init_schema(db)
    return db


async def add_user(
    db: aiosqlite.Connection,
    user_id: str,
    role: ActorRole = ActorRole.USER,
    ip: str = "10.0.0.1",
) -> RegisteredActor:
    await upsert_user(db, UserRecord(user_id=user_id, name=user_id.title(), role=role))
    return await load_registered_actor(db, user_id, ip=ip)


async def super_admin(db: aiosqlite.Connection, user_id: str = "root") -> RegisteredActor:
    return await add_user(db, user_id, ActorRole.SUPER_ADMIN, ip="10.0.0.254")


async def add_venue(
    db: aiosqlite.Connection,
    admin: RegisteredActor,
    code: str,
    kind: VenueKind = VenueKind.JOURNAL,
) -> Venue:
    return await create_venue(db, admin, VenueCreate(kind=kind, code=code, name=f"{code} Review"))


async def add_editor(
    db: aiosqlite.Connection,
    admin: RegisteredActor,
    user_id: str,
    *venue_ids: str,
) -> RegisteredActor:
    """Register ``user_id`` (if needed) as an editor of every venue given."""
    await upsert_user(db, UserRecord(user_id=user_id, name=user_id.title()))
    for venue_id in venue_ids:
        await add_reviewer(db, admin, venue_id, user_id)
    return await load_registered_actor(db, user_id, ip="10.0.1.1")


async def add_chief(
    db: aiosqlite.Connection,
    admin: RegisteredActor,
    user_id: str,
    venue_id: str,
) -> RegisteredActor:
    await upsert_user(db, UserRecord(user_id=user_id, name=user_id.title()))
    await set_editor_in_chief(db, admin, venue_id, user_id)
    return await load_registered_actor(db, user_id, ip="10.0.2.1")


def anonymous(ip: str = "203.0.113.7") -> AnonymousActor:
    return AnonymousActor(ip=ip)


class RecordingNotifier:
    """Collects notifications so tests can assert on them."""

    def __init__(self):
        self.sent = []

    async def notify(self, user_id, kind, payload):
        self.sent.append((user_id, kind, payload))


def pdf(data: bytes = PDF_BYTES, name: str = "paper.pdf") -> UploadedFile:
    return UploadedFile(filename=name, data=data)


def docx(data: bytes = b"PK\x03\x04 word document", name: str = "paper.docx") -> UploadedFile:
    return UploadedFile(filename=name, data=data)


def submission(venue_ids: list[str], **overrides) -> ManuscriptSubmission:
    fields = {
        "title": "Candidate Pools in Practice",
        "authors": [AuthorEntry(name="Ada Author", affiliation="Uni", roles=["corresponding"])],
        "abstract": "We study how manuscripts wait on several journals at once.",
        "category": "Methods",
        "venue_ids": venue_ids,
    }
    fields.update(overrides)
    return ManuscriptSubmission(**fields)


async def submit(
    db: aiosqlite.Connection,
    actor,
    storage,
    venue_ids: list[str],
    upload: UploadedFile | None = None,
    notifier=None,
    **overrides,
) -> Manuscript:
    if upload is None:
        upload = docx() if actor.is_anonymous else pdf()
    return await submit_manuscript(
        db, actor, submission(venue_ids, **overrides), upload, storage, notifier=notifier
    )
