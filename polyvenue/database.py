"""Storage layer: SQLite via aiosqlite.

Provides:
- async SQLite connection via aiosqlite
- schema creation
- manuscript ID generator (MS-YYYY-NNNNN)
- transaction() scope for multi-record state transitions
"""

from __future__ import annotations

import json
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator

import aiosqlite

from polyvenue.config import settings

# ---------------------------------------------------------------------------
# Manuscript ID Generator
# ---------------------------------------------------------------------------

_MS_ID_PREFIX = "MS"


def _current_year() -> int:
    return datetime.now(timezone.utc).year


async def generate_manuscript_id(db: aiosqlite.Connection) -> str:
    """Reserve the next sequential manuscript ID: MS-YYYY-NNNNN.

    Does not commit; the reservation becomes durable together with the
    manuscript row that uses it.
    """
    year = _current_year()
    async with db.execute(
        "SELECT seq FROM id_sequence WHERE year = ?", (year,)
    ) as cursor:
        row = await cursor.fetchone()

    if row is None:
        seq = 1
        await db.execute(
            "INSERT INTO id_sequence (year, seq) VALUES (?, ?)", (year, seq)
        )
    else:
        seq = row[0] + 1
        await db.execute(
            "UPDATE id_sequence SET seq = ? WHERE year = ?", (seq, year)
        )
    return f"{_MS_ID_PREFIX}-{year}-{seq:05d}"


# ---------------------------------------------------------------------------
# SQLite Schema
# ---------------------------------------------------------------------------

SCHEMA_SQL = """
-- Manuscript ID sequence tracker
CREATE TABLE IF NOT EXISTS id_sequence (
    year     INTEGER PRIMARY KEY,
    seq      INTEGER NOT NULL DEFAULT 0
);

-- Venues: journals and conferences share one table, told apart by kind
CREATE TABLE IF NOT EXISTS venues (
    venue_id     TEXT PRIMARY KEY,
    kind         TEXT NOT NULL CHECK (kind IN ('journal', 'conference')),
    code         TEXT NOT NULL UNIQUE,
    name         TEXT NOT NULL,
    description  TEXT NOT NULL DEFAULT '',
    status       TEXT NOT NULL DEFAULT 'active',
    created_at   TEXT NOT NULL,
    updated_at   TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_venues_kind ON venues(kind, status);

-- Registered users known to the engine (credentials live with the identity provider)
CREATE TABLE IF NOT EXISTS users (
    user_id           TEXT PRIMARY KEY,
    name              TEXT NOT NULL,
    role              TEXT NOT NULL DEFAULT 'user',
    managed_venue_id  TEXT UNIQUE,
    created_at        TEXT NOT NULL,
    FOREIGN KEY (managed_venue_id) REFERENCES venues(venue_id)
);

-- Editor (reviewer role) memberships, many-to-many
CREATE TABLE IF NOT EXISTS venue_reviewers (
    venue_id  TEXT NOT NULL,
    user_id   TEXT NOT NULL,
    PRIMARY KEY (venue_id, user_id),
    FOREIGN KEY (venue_id) REFERENCES venues(venue_id),
    FOREIGN KEY (user_id) REFERENCES users(user_id)
);

CREATE INDEX IF NOT EXISTS idx_venue_reviewers_user ON venue_reviewers(user_id);

-- Manuscripts
CREATE TABLE IF NOT EXISTS manuscripts (
    manuscript_id         TEXT PRIMARY KEY,
    title                 TEXT NOT NULL,
    author_display        TEXT NOT NULL DEFAULT '',
    authors               TEXT NOT NULL DEFAULT '[]',
    abstract              TEXT NOT NULL DEFAULT '',
    category              TEXT NOT NULL DEFAULT '',
    manuscript_type       TEXT NOT NULL DEFAULT 'paper',
    file_url              TEXT NOT NULL DEFAULT '',
    content_hash          TEXT NOT NULL DEFAULT '',
    pending_cover_url     TEXT,
    change_log            TEXT NOT NULL DEFAULT '',
    status                TEXT NOT NULL DEFAULT 'draft',
    locked_journal_id     TEXT,
    locked_conference_id  TEXT,
    uploader_id           TEXT,
    uploader_ip           TEXT NOT NULL DEFAULT '',
    popularity            INTEGER NOT NULL DEFAULT 0,
    aoi_score             REAL NOT NULL DEFAULT 0.0,
    ai_rigor              REAL NOT NULL DEFAULT 0.0,
    ai_reproducibility    REAL NOT NULL DEFAULT 0.0,
    ai_standardization    REAL NOT NULL DEFAULT 0.0,
    ai_professionalism    REAL NOT NULL DEFAULT 0.0,
    ai_objectivity        REAL NOT NULL DEFAULT 0.0,
    created_at            TEXT NOT NULL,
    updated_at            TEXT NOT NULL,
    last_submitted_at     TEXT,
    last_approved_at      TEXT,
    CHECK (locked_journal_id IS NULL OR locked_conference_id IS NULL),
    FOREIGN KEY (locked_journal_id) REFERENCES venues(venue_id),
    FOREIGN KEY (locked_conference_id) REFERENCES venues(venue_id),
    FOREIGN KEY (uploader_id) REFERENCES users(user_id)
);

CREATE INDEX IF NOT EXISTS idx_manuscripts_status ON manuscripts(status);
CREATE INDEX IF NOT EXISTS idx_manuscripts_hash ON manuscripts(content_hash);
CREATE INDEX IF NOT EXISTS idx_manuscripts_journal ON manuscripts(locked_journal_id);
CREATE INDEX IF NOT EXISTS idx_manuscripts_conference ON manuscripts(locked_conference_id);

-- Candidate pool: venues a manuscript still awaits a decision from
CREATE TABLE IF NOT EXISTS manuscript_candidate_venues (
    manuscript_id  TEXT NOT NULL,
    venue_id       TEXT NOT NULL,
    added_at       TEXT NOT NULL,
    PRIMARY KEY (manuscript_id, venue_id),
    FOREIGN KEY (manuscript_id) REFERENCES manuscripts(manuscript_id) ON DELETE CASCADE,
    FOREIGN KEY (venue_id) REFERENCES venues(venue_id)
);

CREATE INDEX IF NOT EXISTS idx_pool_venue ON manuscript_candidate_venues(venue_id);

-- Fund application links (fund ids are opaque foreign references)
CREATE TABLE IF NOT EXISTS manuscript_fund_links (
    manuscript_id  TEXT NOT NULL,
    fund_id        TEXT NOT NULL,
    PRIMARY KEY (manuscript_id, fund_id),
    FOREIGN KEY (manuscript_id) REFERENCES manuscripts(manuscript_id) ON DELETE CASCADE
);

-- Review thread entries (public discussion + review-issue timeline)
CREATE TABLE IF NOT EXISTS review_events (
    event_id       TEXT PRIMARY KEY,
    manuscript_id  TEXT NOT NULL,
    thread         TEXT NOT NULL CHECK (thread IN ('discussion', 'review')),
    parent_id      TEXT,
    actor_id       TEXT,
    guest_ip       TEXT,
    guest_name     TEXT,
    action         TEXT NOT NULL DEFAULT 'comment',
    body           TEXT NOT NULL DEFAULT '',
    created_at     TEXT NOT NULL,
    FOREIGN KEY (manuscript_id) REFERENCES manuscripts(manuscript_id) ON DELETE CASCADE,
    FOREIGN KEY (parent_id) REFERENCES review_events(event_id) ON DELETE CASCADE,
    FOREIGN KEY (actor_id) REFERENCES users(user_id)
);

CREATE INDEX IF NOT EXISTS idx_events_manuscript ON review_events(manuscript_id, thread, created_at);

-- Likes on thread entries, unique per registered user or per guest IP
CREATE TABLE IF NOT EXISTS review_event_likes (
    like_id     TEXT PRIMARY KEY,
    event_id    TEXT NOT NULL,
    user_id     TEXT,
    guest_ip    TEXT,
    created_at  TEXT NOT NULL,
    UNIQUE (event_id, user_id),
    UNIQUE (event_id, guest_ip),
    FOREIGN KEY (event_id) REFERENCES review_events(event_id) ON DELETE CASCADE
);

-- Formal review log (compliance trail for approve / reject decisions)
CREATE TABLE IF NOT EXISTS formal_review_logs (
    log_id         TEXT PRIMARY KEY,
    manuscript_id  TEXT NOT NULL,
    reviewer_id    TEXT NOT NULL,
    venue_id       TEXT,
    action         TEXT NOT NULL,
    feedback       TEXT NOT NULL DEFAULT '',
    created_at     TEXT NOT NULL,
    FOREIGN KEY (manuscript_id) REFERENCES manuscripts(manuscript_id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_review_logs_manuscript ON formal_review_logs(manuscript_id);

-- AOI votes, one per (manuscript, voter IP)
CREATE TABLE IF NOT EXISTS aoi_votes (
    manuscript_id  TEXT NOT NULL,
    ip             TEXT NOT NULL,
    user_id        TEXT,
    vote_type      TEXT NOT NULL,
    created_at     TEXT NOT NULL,
    updated_at     TEXT NOT NULL,
    PRIMARY KEY (manuscript_id, ip),
    FOREIGN KEY (manuscript_id) REFERENCES manuscripts(manuscript_id) ON DELETE CASCADE
);

-- Per-actor daily usage counters
CREATE TABLE IF NOT EXISTS usage_counters (
    actor_key  TEXT NOT NULL,
    day        TEXT NOT NULL,
    kind       TEXT NOT NULL,
    count      INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (actor_key, day, kind)
);

-- Audit events (append-only)
CREATE TABLE IF NOT EXISTS audit_events (
    event_id    TEXT PRIMARY KEY,
    action      TEXT NOT NULL,
    actor_id    TEXT NOT NULL DEFAULT '',
    target_id   TEXT NOT NULL DEFAULT '',
    target_type TEXT NOT NULL DEFAULT '',
    details     TEXT NOT NULL DEFAULT '{}',
    timestamp   TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_audit_action ON audit_events(action);
CREATE INDEX IF NOT EXISTS idx_audit_actor ON audit_events(actor_id);
CREATE INDEX IF NOT EXISTS idx_audit_target ON audit_events(target_id);
CREATE INDEX IF NOT EXISTS idx_audit_time ON audit_events(timestamp);
"""


async def init_schema(db: aiosqlite.Connection) -> None:
    """Apply pragmas and create tables on an open connection."""
    db.row_factory = aiosqlite.Row
    await db.execute("PRAGMA foreign_keys = ON;")
    await db.executescript(SCHEMA_SQL)
    await db.commit()


async def get_db() -> aiosqlite.Connection:
    """Open the SQLite database and ensure schema exists."""
    settings.ensure_dirs()
    db = await aiosqlite.connect(str(settings.db_path))
    db.row_factory = aiosqlite.Row
    # Production-friendly SQLite pragmas.
    await db.execute("PRAGMA journal_mode = WAL;")
    await db.execute("PRAGMA synchronous = NORMAL;")
    await db.execute("PRAGMA busy_timeout = 5000;")
    await db.execute("PRAGMA temp_store = MEMORY;")
    await init_schema(db)
    return db


@asynccontextmanager
async def transaction(db: aiosqlite.Connection) -> AsyncIterator[aiosqlite.Connection]:
    """Group writes into one atomic unit: commit on success, roll back on any error.

    Code running inside must not call ``db.commit()`` itself.
    """
    try:
        yield db
    except BaseException:
        await db.rollback()
        raise
    await db.commit()


# ---------------------------------------------------------------------------
# JSON helpers for SQLite columns that store serialised data
# ---------------------------------------------------------------------------

def _json_default(obj: Any) -> Any:
    """Custom JSON serialiser that handles Pydantic models and other types."""
    if hasattr(obj, "model_dump"):
        return obj.model_dump(mode="json")
    return str(obj)


def to_json(obj: Any) -> str:
    """Serialise a Python object for storage in a TEXT column."""
    if isinstance(obj, str):
        return obj
    return json.dumps(obj, default=_json_default)


def from_json(text: str | None) -> Any:
    """Deserialise a TEXT column back to a Python object."""
    if text is None:
        return None
    try:
        return json.loads(text)
    except (json.JSONDecodeError, TypeError):
        return text


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
