"""External collaborators consumed by the engine, with local defaults.

Notification delivery, score computation and the fund-application registry
live outside this core. The protocols below are what the services call; the
local implementations keep a single-process deployment working.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

import aiosqlite

from polyvenue.duplicate_detector import duplicate_factor
from polyvenue.errors import NotFoundError

logger = logging.getLogger("polyvenue.collaborators")


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------

class Notifier(Protocol):
    async def notify(self, user_id: str, kind: str, payload: dict[str, Any]) -> None: ...


class LoggingNotifier:
    """Writes notifications to the log instead of delivering them."""

    async def notify(self, user_id: str, kind: str, payload: dict[str, Any]) -> None:
        logger.info("notify user=%s kind=%s payload=%s", user_id, kind, payload)


async def notify_quietly(
    notifier: Notifier | None,
    user_ids: list[str],
    kind: str,
    payload: dict[str, Any],
) -> None:
    """Fire-and-forget delivery: failures are logged, never raised."""
    if notifier is None:
        return
    for user_id in user_ids:
        try:
            await notifier.notify(user_id, kind, payload)
        except Exception:
            logger.warning("Notification %s to %s failed", kind, user_id, exc_info=True)


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------

class ScoringService(Protocol):
    async def recompute_score(self, db: aiosqlite.Connection, manuscript_id: str) -> float: ...


VOTE_STEP = 0.01
MIN_VOTE_FACTOR = 0.01

_SUB_SCORE_COLUMNS = (
    "ai_rigor",
    "ai_reproducibility",
    "ai_standardization",
    "ai_professionalism",
    "ai_objectivity",
)


def vote_factor(overreach: int, misconduct: int) -> float:
    return max(MIN_VOTE_FACTOR, 1.0 + overreach * VOTE_STEP - misconduct * VOTE_STEP)


class LocalScoringService:
    """Overreach index = product of AI sub-scores x duplicate factor x vote factor."""

    async def recompute_score(self, db: aiosqlite.Connection, manuscript_id: str) -> float:
        async with db.execute(
            f"SELECT {', '.join(_SUB_SCORE_COLUMNS)} FROM manuscripts WHERE manuscript_id = ?",
            (manuscript_id,),
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            raise NotFoundError("Manuscript not found", {"manuscript_id": manuscript_id})

        base = 1.0
        for value in row:
            # Negative sub-scores mark a failed assessment
            base *= max(0.0, float(value or 0.0))

        async with db.execute(
            "SELECT vote_type, COUNT(*) FROM aoi_votes WHERE manuscript_id = ? GROUP BY vote_type",
            (manuscript_id,),
        ) as cursor:
            counts = {r[0]: r[1] for r in await cursor.fetchall()}

        factor = await duplicate_factor(db, manuscript_id)
        score = base * factor * vote_factor(counts.get("overreach", 0), counts.get("misconduct", 0))

        await db.execute(
            "UPDATE manuscripts SET aoi_score = ? WHERE manuscript_id = ?",
            (score, manuscript_id),
        )
        await db.commit()
        logger.info("Recomputed overreach index for %s: %.4f", manuscript_id, score)
        return score


# ---------------------------------------------------------------------------
# Fund-application registry
# ---------------------------------------------------------------------------

@dataclass(slots=True, frozen=True)
class FundSummary:
    fund_id: str
    title: str
    serial_no: str
    scope: str = ""


class FundRegistry(Protocol):
    async def list_approved(self, scope_filter: str | None = None) -> list[FundSummary]: ...


@dataclass
class InMemoryFundRegistry:
    """Approved fund applications held in process memory."""

    funds: list[FundSummary] = field(default_factory=list)

    async def list_approved(self, scope_filter: str | None = None) -> list[FundSummary]:
        if not scope_filter:
            return list(self.funds)
        return [f for f in self.funds if f.scope == scope_filter]
