"""Polyvenue configuration: all tuneable settings in one place."""

from __future__ import annotations

import os
from pathlib import Path

from pydantic import BaseModel, Field


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_csv(name: str, default: list[str]) -> list[str]:
    raw = os.environ.get(name)
    if raw is None:
        return default
    vals = [v.strip() for v in raw.split(",") if v.strip()]
    return vals if vals else default


def _default_data_dir() -> Path:
    """Resolve the data directory: $POLYVENUE_DATA or ./data."""
    env = os.environ.get("POLYVENUE_DATA")
    if env:
        return Path(env)
    return Path(__file__).resolve().parent.parent / "data"


class PolicyConfig(BaseModel):
    """Knobs for submission intake and the editorial workflow."""

    max_candidate_venues_registered: int = Field(
        default_factory=lambda: _env_int("POLYVENUE_MAX_VENUES_REGISTERED", 5),
        ge=1,
        description="Max candidate journals a registered author may submit to at once",
    )
    max_candidate_venues_anonymous: int = Field(
        default_factory=lambda: _env_int("POLYVENUE_MAX_VENUES_ANONYMOUS", 3),
        ge=1,
        description="Max candidate journals an anonymous author may submit to at once",
    )
    max_upload_bytes: int = Field(
        default_factory=lambda: _env_int("POLYVENUE_MAX_UPLOAD_BYTES", 10 * 1024 * 1024),
        ge=1_024,
    )
    registered_extensions: list[str] = Field(
        default_factory=lambda: _env_csv("POLYVENUE_REGISTERED_EXTENSIONS", [".pdf"]),
        description="File extensions accepted from registered submitters",
    )
    anonymous_extensions: list[str] = Field(
        default_factory=lambda: _env_csv(
            "POLYVENUE_ANONYMOUS_EXTENSIONS", [".docx", ".doc", ".zip", ".rar"]
        ),
        description="File extensions accepted from anonymous submitters",
    )
    editor_file_extensions: list[str] = Field(
        default_factory=lambda: [".pdf"],
        description="Extensions editors may upload as the final file on admit/edit",
    )
    journal_queue_statuses: list[str] = Field(
        default_factory=lambda: _env_csv("POLYVENUE_JOURNAL_QUEUE_STATUSES", ["draft"]),
        description="Statuses shown in the journal audit queue (see DESIGN.md, open question 1)",
    )
    conference_queue_statuses: list[str] = Field(
        default_factory=lambda: _env_csv("POLYVENUE_CONFERENCE_QUEUE_STATUSES", ["pending"]),
    )
    daily_submissions_registered: int = Field(
        default_factory=lambda: _env_int("POLYVENUE_DAILY_SUBMISSIONS_REGISTERED", 50), ge=1
    )
    daily_submissions_anonymous: int = Field(
        default_factory=lambda: _env_int("POLYVENUE_DAILY_SUBMISSIONS_ANONYMOUS", 10), ge=1
    )
    max_comment_length: int = Field(default=1_000, ge=1)
    max_review_body_length: int = Field(default=10_000, ge=1)
    max_title_length: int = Field(default=500, ge=1)
    max_abstract_length: int = Field(default=2_000, ge=1)
    max_category_length: int = Field(default=50, ge=1)
    comment_popularity_weight: int = Field(default=10, ge=0)
    anonymous_name_prefix: str = Field(
        default_factory=lambda: os.environ.get("POLYVENUE_ANON_PREFIX", "Anonymous-"),
    )
    anonymous_hash_length: int = Field(default=6, ge=4, le=64)
    default_approve_feedback: str = Field(default="Accepted for publication")
    default_revision_note: str = Field(default="New version uploaded")


class SecurityConfig(BaseModel):
    """Session resolution settings."""

    sessions_json: str = Field(
        default_factory=lambda: os.environ.get("POLYVENUE_SESSIONS_JSON", ""),
        description=(
            "JSON list of session records issued by the identity provider: "
            "[{\"token\":\"...\",\"user_id\":\"...\"}]"
        ),
    )
    allow_anonymous_read: bool = Field(
        default_factory=lambda: _env_bool("POLYVENUE_ALLOW_ANON_READ", True),
    )
    trust_forwarded_for: bool = Field(
        default_factory=lambda: _env_bool("POLYVENUE_TRUST_FORWARDED_FOR", True),
        description="Use the first X-Forwarded-For entry as the client IP",
    )


class RateLimitConfig(BaseModel):
    """Basic API rate limiting controls."""

    enabled: bool = Field(default_factory=lambda: _env_bool("POLYVENUE_RATE_LIMIT_ENABLED", True))
    requests_per_minute: int = Field(
        default_factory=lambda: _env_int("POLYVENUE_RATE_LIMIT_RPM", 120),
        ge=1,
    )


class ServerConfig(BaseModel):
    """Network settings."""

    host: str = Field(default_factory=lambda: os.environ.get("POLYVENUE_HOST", "127.0.0.1"))
    rest_port: int = Field(default_factory=lambda: _env_int("POLYVENUE_PORT", 8000))
    trusted_hosts: list[str] = Field(
        default_factory=lambda: _env_csv(
            "POLYVENUE_TRUSTED_HOSTS",
            ["127.0.0.1", "localhost", "testserver"],
        ),
    )
    cors_origins: list[str] = Field(
        default_factory=lambda: _env_csv("POLYVENUE_CORS_ORIGINS", []),
    )
    max_request_bytes: int = Field(
        default_factory=lambda: _env_int("POLYVENUE_MAX_REQUEST_BYTES", 12_000_000),
        ge=1_024,
    )
    workers: int = Field(default_factory=lambda: _env_int("POLYVENUE_WORKERS", 1), ge=1)
    log_level: str = Field(default_factory=lambda: os.environ.get("POLYVENUE_LOG_LEVEL", "info"))


class Config(BaseModel):
    """Top-level Polyvenue configuration."""

    environment: str = Field(default_factory=lambda: os.environ.get("POLYVENUE_ENV", "development"))
    data_dir: Path = Field(default_factory=_default_data_dir)
    db_filename: str = Field(default="polyvenue.db")
    uploads_dir_name: str = Field(default="uploads")
    policy: PolicyConfig = Field(default_factory=PolicyConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)

    @property
    def db_path(self) -> Path:
        return self.data_dir / self.db_filename

    @property
    def uploads_path(self) -> Path:
        return self.data_dir / self.uploads_dir_name

    def ensure_dirs(self) -> None:
        """Create data directories if they don't exist."""
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.uploads_path.mkdir(parents=True, exist_ok=True)


# Singleton, importable everywhere as `from polyvenue.config import settings`
settings = Config()
