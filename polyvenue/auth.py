"""Session resolution helpers for REST API endpoints.

Credentials live with the external identity provider. The engine only sees an
opaque session token, which is mapped to a user id through a configured index.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from functools import lru_cache

from fastapi import Header, HTTPException, Request, status
from pydantic import BaseModel, Field, ValidationError

from polyvenue.config import settings


class SessionRecord(BaseModel):
    """Configuration record for one issued session token."""

    token: str = Field(min_length=8)
    user_id: str = Field(min_length=1)


@dataclass(slots=True, frozen=True)
class SessionContext:
    """Who the request claims to be, before memberships are loaded."""

    user_id: str | None = None
    ip: str = ""

    @property
    def authenticated(self) -> bool:
        return self.user_id is not None


def _normalize_records(raw: object) -> list[SessionRecord]:
    records: list[SessionRecord] = []

    if isinstance(raw, list):
        for item in raw:
            if not isinstance(item, dict):
                continue
            try:
                records.append(SessionRecord(**item))
            except ValidationError:
                continue
    elif isinstance(raw, dict):
        # Support dict form: {"<token>": "<user_id>"}
        for token, user_id in raw.items():
            try:
                records.append(SessionRecord(token=token, user_id=str(user_id)))
            except ValidationError:
                continue

    return records


@lru_cache(maxsize=1)
def _session_index() -> dict[str, str]:
    raw = settings.security.sessions_json.strip()
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    return {rec.token: rec.user_id for rec in _normalize_records(parsed)}


def reload_session_cache() -> None:
    """Clear cached session tokens (useful in tests or on token rotation)."""
    _session_index.cache_clear()


def client_ip(request: Request) -> str:
    """Client address: first X-Forwarded-For hop when trusted, else the socket peer."""
    if settings.security.trust_forwarded_for:
        forwarded = request.headers.get("x-forwarded-for", "")
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    if request.client and request.client.host:
        return request.client.host
    return "127.0.0.1"


async def get_session(
    request: Request,
    x_session_token: str | None = Header(default=None, alias="X-Session-Token"),
) -> SessionContext:
    """Resolve the request's session token into a SessionContext."""
    ip = client_ip(request)
    if not x_session_token:
        return SessionContext(user_id=None, ip=ip)

    user_id = _session_index().get(x_session_token)
    if user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired session",
        )
    return SessionContext(user_id=user_id, ip=ip)


def enforce_read_access(ctx: SessionContext) -> None:
    """Optionally require a session for read paths based on configuration."""
    if settings.security.allow_anonymous_read:
        return
    if ctx.authenticated:
        return
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")
