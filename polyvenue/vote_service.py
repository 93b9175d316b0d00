"""Academic-overreach votes: one per (manuscript, voter IP), changeable.

The vote is committed first; the score recompute runs afterwards and its
failure is logged without touching the stored vote.
"""

from __future__ import annotations

import logging

import aiosqlite

from polyvenue.collaborators import ScoringService
from polyvenue.database import utcnow
from polyvenue.errors import ValidationFailure
from polyvenue.identity import Actor, RegisteredActor
from polyvenue.manuscript_service import require_manuscript
from polyvenue.models import AoiVote, AoiVoteType, ManuscriptStatus

logger = logging.getLogger("polyvenue.votes")


async def cast_aoi_vote(
    db: aiosqlite.Connection,
    actor: Actor,
    manuscript_id: str,
    vote_type: AoiVoteType,
    scoring: ScoringService | None = None,
) -> AoiVote:
    """Insert or change the actor's vote on a published manuscript."""
    manuscript = await require_manuscript(db, manuscript_id)
    if manuscript.status != ManuscriptStatus.PUBLISHED:
        raise ValidationFailure.for_field("manuscript_id", "Only published manuscripts can be voted on")

    now = utcnow()
    vote = AoiVote(
        manuscript_id=manuscript_id,
        ip=actor.ip,
        user_id=actor.actor_id if isinstance(actor, RegisteredActor) else None,
        vote_type=vote_type,
        created_at=now,
        updated_at=now,
    )
    await db.execute(
        """
        INSERT INTO aoi_votes (manuscript_id, ip, user_id, vote_type, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?)
        ON CONFLICT(manuscript_id, ip) DO UPDATE SET
            vote_type = excluded.vote_type,
            user_id = excluded.user_id,
            updated_at = excluded.updated_at
        """,
        (
            vote.manuscript_id,
            vote.ip,
            vote.user_id,
            vote.vote_type.value,
            now.isoformat(),
            now.isoformat(),
        ),
    )
    await db.commit()

    if scoring is not None:
        try:
            await scoring.recompute_score(db, manuscript_id)
        except Exception:
            await db.rollback()
            logger.warning("Score recompute failed for %s", manuscript_id, exc_info=True)
    return vote


async def vote_summary(db: aiosqlite.Connection, manuscript_id: str) -> dict[str, int]:
    """Vote counts per type."""
    counts = {t.value: 0 for t in AoiVoteType}
    async with db.execute(
        "SELECT vote_type, COUNT(*) FROM aoi_votes WHERE manuscript_id = ? GROUP BY vote_type",
        (manuscript_id,),
    ) as cursor:
        for row in await cursor.fetchall():
            counts[row[0]] = row[1]
    return counts
