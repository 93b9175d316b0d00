"""Unit tests for overreach votes and score recomputation."""

import pytest

from factories import add_user, add_venue, anonymous, memory_db, pdf, submit, super_admin
from polyvenue.collaborators import LocalScoringService, vote_factor
from polyvenue.errors import NotFoundError, ValidationFailure
from polyvenue.manuscript_service import require_manuscript
from polyvenue.models import AoiVoteType
from polyvenue.vote_service import cast_aoi_vote, vote_summary
from polyvenue.workflow import admit_manuscript


class _BrokenScoring:
    async def recompute_score(self, db, manuscript_id):
        raise RuntimeError("scoring backend offline")


async def _published(db, storage, data=b"%PDF unique"):
    root = await super_admin(db)
    j1 = await add_venue(db, root, "J1")
    author = await add_user(db, "author")
    m = await submit(db, author, storage, [j1.venue_id], upload=pdf(data))
    await admit_manuscript(db, root, m.manuscript_id, j1.venue_id)
    await db.execute(
        """
        UPDATE manuscripts SET ai_rigor = 1, ai_reproducibility = 1, ai_standardization = 1,
            ai_professionalism = 1, ai_objectivity = 1
        WHERE manuscript_id = ?
        """,
        (m.manuscript_id,),
    )
    await db.commit()
    return root, j1, author, m


def test_vote_factor_is_floored():
    assert vote_factor(0, 0) == 1.0
    assert vote_factor(3, 1) == pytest.approx(1.02)
    assert vote_factor(0, 500) == 0.01


class TestVotes:
    @pytest.mark.asyncio
    async def test_one_vote_per_ip_and_changeable(self, storage):
        db = await memory_db()
        try:
            _, _, _, m = await _published(db, storage)
            voter = anonymous("198.51.100.1")

            await cast_aoi_vote(db, voter, m.manuscript_id, AoiVoteType.OVERREACH)
            await cast_aoi_vote(db, voter, m.manuscript_id, AoiVoteType.OVERREACH)
            assert await vote_summary(db, m.manuscript_id) == {"overreach": 1, "misconduct": 0}

            await cast_aoi_vote(db, voter, m.manuscript_id, AoiVoteType.MISCONDUCT)
            await cast_aoi_vote(db, anonymous("198.51.100.2"), m.manuscript_id, AoiVoteType.MISCONDUCT)
            assert await vote_summary(db, m.manuscript_id) == {"overreach": 0, "misconduct": 2}
        finally:
            await db.close()

    @pytest.mark.asyncio
    async def test_only_published_manuscripts_take_votes(self, storage):
        db = await memory_db()
        try:
            root = await super_admin(db)
            j1 = await add_venue(db, root, "J1")
            author = await add_user(db, "author")
            m = await submit(db, author, storage, [j1.venue_id])

            with pytest.raises(ValidationFailure):
                await cast_aoi_vote(db, anonymous(), m.manuscript_id, AoiVoteType.OVERREACH)
            with pytest.raises(NotFoundError):
                await cast_aoi_vote(db, anonymous(), "MS-2000-00009", AoiVoteType.OVERREACH)
        finally:
            await db.close()

    @pytest.mark.asyncio
    async def test_vote_triggers_score_recompute(self, storage):
        db = await memory_db()
        try:
            _, _, author, m = await _published(db, storage)

            await cast_aoi_vote(db, author, m.manuscript_id, AoiVoteType.OVERREACH, scoring=LocalScoringService())

            assert (await require_manuscript(db, m.manuscript_id)).aoi_score == pytest.approx(1.01)
        finally:
            await db.close()

    @pytest.mark.asyncio
    async def test_duplicate_content_halves_score(self, storage):
        db = await memory_db()
        try:
            _, j1, author, m = await _published(db, storage)
            await submit(db, author, storage, [j1.venue_id], upload=pdf(b"%PDF unique"))

            score = await LocalScoringService().recompute_score(db, m.manuscript_id)
            assert score == pytest.approx(0.5)
        finally:
            await db.close()

    @pytest.mark.asyncio
    async def test_scoring_failure_keeps_vote(self, storage):
        db = await memory_db()
        try:
            _, _, _, m = await _published(db, storage)

            vote = await cast_aoi_vote(db, anonymous(), m.manuscript_id, AoiVoteType.MISCONDUCT, scoring=_BrokenScoring())

            assert vote.vote_type == AoiVoteType.MISCONDUCT
            assert await vote_summary(db, m.manuscript_id) == {"overreach": 0, "misconduct": 1}
        finally:
            await db.close()
