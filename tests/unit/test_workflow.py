"""Unit tests for admit / reject decisions and editor edits."""

import itertools

import pytest

from factories import (
    PDF_BYTES,
    RecordingNotifier,
    add_editor,
    add_user,
    add_venue,
    anonymous,
    docx,
    memory_db,
    pdf,
    submit,
    super_admin,
)
from polyvenue.audit_service import get_events_for_target, get_review_logs
from polyvenue.errors import AuthorizationError, ConflictError, ValidationFailure
from polyvenue.manuscript_service import require_manuscript
from polyvenue.models import (
    FormalDecision,
    Manuscript,
    ManuscriptEdits,
    ManuscriptStatus,
    VenueKind,
)
from polyvenue.venue_service import delete_venue
from polyvenue.workflow import (
    admit_manuscript,
    check_invariants,
    edit_manuscript,
    reject_manuscript,
    set_fund_links,
)


class _ExplodingNotifier:
    async def notify(self, user_id, kind, payload):
        raise RuntimeError("mail relay down")


class TestAdmit:
    @pytest.mark.asyncio
    async def test_admit_locks_single_venue_and_clears_pool(self, storage):
        db = await memory_db()
        try:
            root = await super_admin(db)
            j1, j2, j3 = [await add_venue(db, root, code) for code in ("J1", "J2", "J3")]
            author = await add_user(db, "author")
            editor = await add_editor(db, root, "ed2", j2.venue_id)
            m = await submit(db, author, storage, [j1.venue_id, j2.venue_id, j3.venue_id])
            assert m.status == ManuscriptStatus.PENDING
            assert m.candidate_venue_ids == [j1.venue_id, j2.venue_id, j3.venue_id]

            admitted = await admit_manuscript(db, editor, m.manuscript_id, j2.venue_id)

            assert admitted.locked_journal_id == j2.venue_id
            assert admitted.locked_conference_id is None
            assert admitted.candidate_venue_ids == []
            assert admitted.status == ManuscriptStatus.PUBLISHED
            assert admitted.last_approved_at is not None
            assert check_invariants(admitted) == []

            logs = await get_review_logs(db, m.manuscript_id)
            assert len(logs) == 1
            assert logs[0].action == FormalDecision.APPROVE
            assert logs[0].venue_id == j2.venue_id
            assert logs[0].feedback == "Accepted for publication"
        finally:
            await db.close()

    @pytest.mark.asyncio
    async def test_admit_requires_scope_over_target_venue(self, storage):
        db = await memory_db()
        try:
            root = await super_admin(db)
            j1 = await add_venue(db, root, "J1")
            j2 = await add_venue(db, root, "J2")
            author = await add_user(db, "author")
            editor = await add_editor(db, root, "ed1", j1.venue_id)
            m = await submit(db, author, storage, [j1.venue_id, j2.venue_id])

            with pytest.raises(AuthorizationError):
                await admit_manuscript(db, editor, m.manuscript_id, j2.venue_id)
            with pytest.raises(AuthorizationError):
                await admit_manuscript(db, author, m.manuscript_id, j1.venue_id)

            unchanged = await require_manuscript(db, m.manuscript_id)
            assert unchanged.status == ManuscriptStatus.PENDING
            assert unchanged.candidate_venue_ids == [j1.venue_id, j2.venue_id]
        finally:
            await db.close()

    @pytest.mark.asyncio
    async def test_editor_cannot_admit_into_venue_outside_pool(self, storage):
        db = await memory_db()
        try:
            root = await super_admin(db)
            j1 = await add_venue(db, root, "J1")
            j2 = await add_venue(db, root, "J2")
            author = await add_user(db, "author")
            editor = await add_editor(db, root, "ed", j1.venue_id, j2.venue_id)
            m = await submit(db, author, storage, [j1.venue_id])

            with pytest.raises(AuthorizationError):
                await admit_manuscript(db, editor, m.manuscript_id, j2.venue_id)
        finally:
            await db.close()

    @pytest.mark.asyncio
    async def test_super_admin_may_force_lock_outside_pool(self, storage):
        db = await memory_db()
        try:
            root = await super_admin(db)
            j1 = await add_venue(db, root, "J1")
            j2 = await add_venue(db, root, "J2")
            author = await add_user(db, "author")
            m = await submit(db, author, storage, [j1.venue_id])

            admitted = await admit_manuscript(db, root, m.manuscript_id, j2.venue_id, feedback="Moved")

            assert admitted.locked_journal_id == j2.venue_id
            assert admitted.candidate_venue_ids == []
            logs = await get_review_logs(db, m.manuscript_id)
            assert logs[-1].feedback == "Moved"
        finally:
            await db.close()

    @pytest.mark.asyncio
    async def test_admit_conference_manuscript(self, storage):
        db = await memory_db()
        try:
            root = await super_admin(db)
            c1 = await add_venue(db, root, "C1", VenueKind.CONFERENCE)
            author = await add_user(db, "author")
            chair = await add_editor(db, root, "chair", c1.venue_id)
            m = await submit(db, author, storage, [c1.venue_id])
            assert m.locked_conference_id == c1.venue_id
            assert m.candidate_venue_ids == []
            assert check_invariants(m) == []

            admitted = await admit_manuscript(db, chair, m.manuscript_id, c1.venue_id)

            assert admitted.status == ManuscriptStatus.PUBLISHED
            assert admitted.locked_conference_id == c1.venue_id
            assert admitted.locked_journal_id is None
        finally:
            await db.close()

    @pytest.mark.asyncio
    async def test_admit_twice_is_a_conflict(self, storage):
        db = await memory_db()
        try:
            root = await super_admin(db)
            j1 = await add_venue(db, root, "J1")
            author = await add_user(db, "author")
            m = await submit(db, author, storage, [j1.venue_id])
            await admit_manuscript(db, root, m.manuscript_id, j1.venue_id)

            with pytest.raises(ConflictError):
                await admit_manuscript(db, root, m.manuscript_id, j1.venue_id)
            assert len(await get_review_logs(db, m.manuscript_id)) == 1
        finally:
            await db.close()

    @pytest.mark.asyncio
    async def test_admit_applies_edits_and_replacement_file(self, storage):
        db = await memory_db()
        try:
            root = await super_admin(db)
            j1 = await add_venue(db, root, "J1")
            author = await add_user(db, "author")
            editor = await add_editor(db, root, "ed", j1.venue_id)
            m = await submit(db, author, storage, [j1.venue_id])

            admitted = await admit_manuscript(
                db,
                editor,
                m.manuscript_id,
                j1.venue_id,
                edits=ManuscriptEdits(title="  Final Title  ", fund_ids=["F-1", "F-1", "F-2"]),
                replacement=pdf(PDF_BYTES + b"\n% typeset"),
                storage=storage,
            )

            assert admitted.title == "Final Title"
            assert admitted.fund_ids == ["F-1", "F-2"]
            assert admitted.file_url != m.file_url
            assert admitted.content_hash != m.content_hash
            assert await storage.exists(admitted.file_url)
        finally:
            await db.close()

    @pytest.mark.asyncio
    async def test_invalid_replacement_leaves_manuscript_untouched(self, storage):
        db = await memory_db()
        try:
            root = await super_admin(db)
            j1 = await add_venue(db, root, "J1")
            author = await add_user(db, "author")
            m = await submit(db, author, storage, [j1.venue_id])

            with pytest.raises(ValidationFailure) as exc:
                await admit_manuscript(
                    db,
                    root,
                    m.manuscript_id,
                    j1.venue_id,
                    edits=ManuscriptEdits(title="Changed"),
                    replacement=docx(),
                    storage=storage,
                )
            assert "file" in exc.value.field_errors

            after = await require_manuscript(db, m.manuscript_id)
            assert after.status == ManuscriptStatus.PENDING
            assert after.title == m.title
            assert after.candidate_venue_ids == [j1.venue_id]
            assert await get_review_logs(db, m.manuscript_id) == []
        finally:
            await db.close()

    @pytest.mark.asyncio
    async def test_admit_notifies_uploader_and_survives_notifier_failure(self, storage):
        db = await memory_db()
        try:
            root = await super_admin(db)
            j1 = await add_venue(db, root, "J1")
            j2 = await add_venue(db, root, "J2")
            author = await add_user(db, "author")
            first = await submit(db, author, storage, [j1.venue_id])
            second = await submit(db, author, storage, [j2.venue_id], upload=pdf(b"%PDF other"))

            notifier = RecordingNotifier()
            await admit_manuscript(db, root, first.manuscript_id, j1.venue_id, notifier=notifier)
            assert [(uid, kind) for uid, kind, _ in notifier.sent] == [("author", "manuscript_admitted")]

            admitted = await admit_manuscript(
                db, root, second.manuscript_id, j2.venue_id, notifier=_ExplodingNotifier()
            )
            assert admitted.status == ManuscriptStatus.PUBLISHED
        finally:
            await db.close()


class TestReject:
    @pytest.mark.asyncio
    async def test_pool_shrinks_then_exhausts(self, storage):
        db = await memory_db()
        try:
            root = await super_admin(db)
            j1 = await add_venue(db, root, "J1")
            j2 = await add_venue(db, root, "J2")
            author = await add_user(db, "author")
            ed1 = await add_editor(db, root, "ed1", j1.venue_id)
            ed2 = await add_editor(db, root, "ed2", j2.venue_id)
            m = await submit(db, author, storage, [j1.venue_id, j2.venue_id])

            after_first = await reject_manuscript(db, ed1, m.manuscript_id, j1.venue_id, "Out of scope")
            assert after_first.candidate_venue_ids == [j2.venue_id]
            assert after_first.status == ManuscriptStatus.PENDING

            after_second = await reject_manuscript(db, ed2, m.manuscript_id, j2.venue_id)
            assert after_second.candidate_venue_ids == []
            assert after_second.status == ManuscriptStatus.REJECTED
            assert after_second.locked_venue_id is None

            logs = await get_review_logs(db, m.manuscript_id)
            assert [(log.action, log.venue_id) for log in logs] == [
                (FormalDecision.REJECT, j1.venue_id),
                (FormalDecision.REJECT, j2.venue_id),
            ]

            events = await get_events_for_target(db, m.manuscript_id)
            assert events[0]["action"] == "venue_declined"
            assert events[0]["details"]["pool_exhausted"] is True
        finally:
            await db.close()

    @pytest.mark.asyncio
    async def test_pool_exhausts_in_any_rejection_order(self, storage):
        db = await memory_db()
        try:
            root = await super_admin(db)
            author = await add_user(db, "author")
            editors = {}
            for code in ("J1", "J2", "J3"):
                venue = await add_venue(db, root, code)
                editors[venue.venue_id] = await add_editor(db, root, f"ed-{code.lower()}", venue.venue_id)

            for n, order in enumerate(itertools.permutations(editors)):
                m = await submit(db, author, storage, list(editors), upload=pdf(f"%PDF order {n}".encode()))
                for i, venue_id in enumerate(order):
                    after = await reject_manuscript(db, editors[venue_id], m.manuscript_id, venue_id)
                    assert after.candidate_venue_ids == [v for v in editors if v not in order[: i + 1]]
                    if i < len(order) - 1:
                        assert after.status == ManuscriptStatus.PENDING
                    else:
                        assert after.status == ManuscriptStatus.REJECTED
                        assert check_invariants(after) == []
        finally:
            await db.close()

    @pytest.mark.asyncio
    async def test_reject_for_venue_not_in_pool_is_conflict(self, storage):
        db = await memory_db()
        try:
            root = await super_admin(db)
            j1 = await add_venue(db, root, "J1")
            j3 = await add_venue(db, root, "J3")
            author = await add_user(db, "author")
            ed3 = await add_editor(db, root, "ed3", j3.venue_id)
            m = await submit(db, author, storage, [j1.venue_id])

            with pytest.raises(ConflictError):
                await reject_manuscript(db, ed3, m.manuscript_id, j3.venue_id)
        finally:
            await db.close()

    @pytest.mark.asyncio
    async def test_editor_must_name_venue(self, storage):
        db = await memory_db()
        try:
            root = await super_admin(db)
            j1 = await add_venue(db, root, "J1")
            author = await add_user(db, "author")
            ed1 = await add_editor(db, root, "ed1", j1.venue_id)
            m = await submit(db, author, storage, [j1.venue_id])

            with pytest.raises(ValidationFailure) as exc:
                await reject_manuscript(db, ed1, m.manuscript_id)
            assert "venue_id" in exc.value.field_errors
        finally:
            await db.close()

    @pytest.mark.asyncio
    async def test_outsider_cannot_reject(self, storage):
        db = await memory_db()
        try:
            root = await super_admin(db)
            j1 = await add_venue(db, root, "J1")
            j2 = await add_venue(db, root, "J2")
            author = await add_user(db, "author")
            ed2 = await add_editor(db, root, "ed2", j2.venue_id)
            m = await submit(db, author, storage, [j1.venue_id])

            with pytest.raises(AuthorizationError):
                await reject_manuscript(db, ed2, m.manuscript_id, j1.venue_id)
            with pytest.raises(AuthorizationError):
                await reject_manuscript(db, anonymous(), m.manuscript_id, j1.venue_id)
        finally:
            await db.close()

    @pytest.mark.asyncio
    async def test_conference_reject_is_hard_reject(self, storage):
        db = await memory_db()
        try:
            root = await super_admin(db)
            c1 = await add_venue(db, root, "C1", VenueKind.CONFERENCE)
            c2 = await add_venue(db, root, "C2", VenueKind.CONFERENCE)
            author = await add_user(db, "author")
            chair = await add_editor(db, root, "chair", c1.venue_id)
            m = await submit(db, author, storage, [c1.venue_id])

            with pytest.raises(ConflictError):
                await reject_manuscript(db, chair, m.manuscript_id, c2.venue_id)

            rejected = await reject_manuscript(db, chair, m.manuscript_id, feedback="Not a fit")
            assert rejected.status == ManuscriptStatus.REJECTED
            assert rejected.locked_conference_id == c1.venue_id

            logs = await get_review_logs(db, m.manuscript_id)
            assert len(logs) == 1
            assert logs[0].venue_id == c1.venue_id
            assert logs[0].feedback == "Not a fit"
        finally:
            await db.close()

    @pytest.mark.asyncio
    async def test_super_admin_without_memberships_rejects_outright(self, storage):
        db = await memory_db()
        try:
            root = await super_admin(db)
            j1 = await add_venue(db, root, "J1")
            j2 = await add_venue(db, root, "J2")
            author = await add_user(db, "author")
            m = await submit(db, author, storage, [j1.venue_id, j2.venue_id])

            rejected = await reject_manuscript(db, root, m.manuscript_id, j1.venue_id)

            assert rejected.status == ManuscriptStatus.REJECTED
            assert rejected.candidate_venue_ids == []
            await delete_venue(db, root, j2.venue_id)
            events = await get_events_for_target(db, m.manuscript_id)
            assert events[0]["action"] == "manuscript_rejected"
        finally:
            await db.close()

    @pytest.mark.asyncio
    async def test_rejecting_published_manuscript_is_conflict(self, storage):
        db = await memory_db()
        try:
            root = await super_admin(db)
            j1 = await add_venue(db, root, "J1")
            author = await add_user(db, "author")
            ed1 = await add_editor(db, root, "ed1", j1.venue_id)
            m = await submit(db, author, storage, [j1.venue_id])
            await admit_manuscript(db, ed1, m.manuscript_id, j1.venue_id)

            with pytest.raises(ConflictError):
                await reject_manuscript(db, ed1, m.manuscript_id, j1.venue_id)
        finally:
            await db.close()


class TestEdits:
    @pytest.mark.asyncio
    async def test_edit_requires_changes_and_access(self, storage):
        db = await memory_db()
        try:
            root = await super_admin(db)
            j1 = await add_venue(db, root, "J1")
            author = await add_user(db, "author")
            ed1 = await add_editor(db, root, "ed1", j1.venue_id)
            m = await submit(db, author, storage, [j1.venue_id])

            with pytest.raises(ValidationFailure):
                await edit_manuscript(db, ed1, m.manuscript_id, ManuscriptEdits())
            with pytest.raises(AuthorizationError):
                await edit_manuscript(db, author, m.manuscript_id, ManuscriptEdits(abstract="Mine"))

            edited = await edit_manuscript(db, ed1, m.manuscript_id, ManuscriptEdits(abstract=" Tightened. "))
            assert edited.abstract == "Tightened."
            assert edited.status == ManuscriptStatus.PENDING
        finally:
            await db.close()

    @pytest.mark.asyncio
    async def test_set_fund_links_replaces_existing(self, storage):
        db = await memory_db()
        try:
            root = await super_admin(db)
            j1 = await add_venue(db, root, "J1")
            author = await add_user(db, "author")
            m = await submit(db, author, storage, [j1.venue_id], fund_ids=["F-1"])
            assert m.fund_ids == ["F-1"]

            updated = await set_fund_links(db, root, m.manuscript_id, ["F-3", "F-2"])
            assert updated.fund_ids == ["F-2", "F-3"]
        finally:
            await db.close()


class TestInvariants:
    def test_clean_pending_journal_manuscript(self):
        m = Manuscript(title="T", status=ManuscriptStatus.PENDING, candidate_venue_ids=["j1"])
        assert check_invariants(m) == []

    def test_two_locks_violate_single_lock(self):
        m = Manuscript(
            title="T",
            status=ManuscriptStatus.PUBLISHED,
            locked_journal_id="j1",
            locked_conference_id="c1",
        )
        assert "single_lock" in check_invariants(m)

    def test_lock_with_pool_is_flagged(self):
        m = Manuscript(
            title="T",
            status=ManuscriptStatus.PUBLISHED,
            locked_journal_id="j1",
            candidate_venue_ids=["j2"],
        )
        violations = check_invariants(m)
        assert "lock_excludes_pool" in violations
        assert "published_is_locked" in violations

    def test_pending_without_venue_is_flagged(self):
        m = Manuscript(title="T", status=ManuscriptStatus.PENDING)
        assert check_invariants(m) == ["pending_needs_venue"]

    def test_rejected_with_empty_pool_is_fine(self):
        m = Manuscript(title="T", status=ManuscriptStatus.REJECTED)
        assert check_invariants(m) == []
