"""Identity resolver: who is acting on a request.

Every operation receives an explicit Actor: a RegisteredActor carrying role and
venue memberships, or an AnonymousActor keyed by request IP.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Union

import aiosqlite

from polyvenue.config import settings
from polyvenue.errors import AuthorizationError
from polyvenue.models import ADMIN_ROLES, ActorRole, UserRecord


def hash_ip(ip: str) -> str:
    """One-way SHA-256 digest of an IP address (hex)."""
    return hashlib.sha256(ip.encode("utf-8")).hexdigest()


def anonymous_display_name(ip: str) -> str:
    """Stable pseudonym for an IP. Short on purpose; collisions are accepted."""
    length = settings.policy.anonymous_hash_length
    return f"{settings.policy.anonymous_name_prefix}{hash_ip(ip)[:length].upper()}"


@dataclass(slots=True, frozen=True)
class RegisteredActor:
    """A signed-in user with a role and venue memberships."""

    actor_id: str
    role: ActorRole = ActorRole.USER
    name: str = ""
    managed_venue_id: str | None = None
    reviewer_venue_ids: frozenset[str] = frozenset()
    ip: str = ""

    is_anonymous = False

    @property
    def display_name(self) -> str:
        return self.name or self.actor_id

    @property
    def key(self) -> str:
        """Stable key for per-actor counters and audit rows."""
        return self.actor_id

    @property
    def is_super_admin(self) -> bool:
        return self.role == ActorRole.SUPER_ADMIN

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES

    def memberships(self) -> frozenset[str]:
        """Venues this actor is staff of, regardless of role."""
        ids = set(self.reviewer_venue_ids)
        if self.managed_venue_id:
            ids.add(self.managed_venue_id)
        return frozenset(ids)


@dataclass(slots=True, frozen=True)
class AnonymousActor:
    """A visitor without a session, identified only by IP."""

    ip: str

    is_anonymous = True
    is_super_admin = False
    is_admin = False
    role = None

    @property
    def ip_hash(self) -> str:
        return hash_ip(self.ip)

    @property
    def display_name(self) -> str:
        return anonymous_display_name(self.ip)

    @property
    def key(self) -> str:
        return f"ip:{self.ip_hash}"

    def memberships(self) -> frozenset[str]:
        return frozenset()


Actor = Union[RegisteredActor, AnonymousActor]


# ---------------------------------------------------------------------------
# User records
# ---------------------------------------------------------------------------

async def upsert_user(db: aiosqlite.Connection, user: UserRecord) -> UserRecord:
    """Mirror a user from the identity provider into the engine's tables."""
    await db.execute(
        """
        INSERT INTO users (user_id, name, role, managed_venue_id, created_at)
        VALUES (?, ?, ?, ?, ?)
        ON CONFLICT(user_id) DO UPDATE SET name = excluded.name, role = excluded.role
        """,
        (
            user.user_id,
            user.name,
            user.role.value,
            user.managed_venue_id,
            user.created_at.isoformat(),
        ),
    )
    await db.commit()
    return user


async def get_user(db: aiosqlite.Connection, user_id: str) -> UserRecord | None:
    async with db.execute("SELECT * FROM users WHERE user_id = ?", (user_id,)) as cursor:
        row = await cursor.fetchone()
    if row is None:
        return None
    return UserRecord(**dict(row))


async def load_registered_actor(
    db: aiosqlite.Connection,
    user_id: str,
    ip: str = "",
) -> RegisteredActor:
    """Build a RegisteredActor with current venue memberships from storage."""
    user = await get_user(db, user_id)
    if user is None:
        raise AuthorizationError("Session refers to an unknown user", {"user_id": user_id})

    async with db.execute(
        "SELECT venue_id FROM venue_reviewers WHERE user_id = ?", (user_id,)
    ) as cursor:
        reviewer_ids = frozenset(row[0] for row in await cursor.fetchall())

    return RegisteredActor(
        actor_id=user.user_id,
        role=user.role,
        name=user.name,
        managed_venue_id=user.managed_venue_id,
        reviewer_venue_ids=reviewer_ids,
        ip=ip,
    )


async def resolve_actor(
    db: aiosqlite.Connection,
    user_id: str | None,
    ip: str,
) -> Actor:
    """Resolve a request's session user (or lack of one) into an Actor."""
    if user_id:
        return await load_registered_actor(db, user_id, ip=ip)
    return AnonymousActor(ip=ip or "127.0.0.1")


def actor_label(actor: Actor) -> str:
    """Identifier written to audit rows: user id, or pseudonym for anonymous actors."""
    if isinstance(actor, RegisteredActor):
        return actor.actor_id
    return actor.display_name
