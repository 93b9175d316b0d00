"""Unit tests for the venue registry, staff management and pool primitives."""

import pytest

from factories import add_chief, add_editor, add_user, add_venue, memory_db, submit, super_admin
from polyvenue.errors import AuthorizationError, NotFoundError, ValidationFailure
from polyvenue.identity import get_user
from polyvenue.models import ActorRole, VenueCreate, VenueKind, VenueStatus, VenueUpdate
from polyvenue.venue_service import (
    add_reviewer,
    add_to_pool,
    create_venue,
    delete_venue,
    get_editor_in_chief_id,
    get_pool,
    list_reviewer_ids,
    list_venues,
    remove_from_pool,
    remove_reviewer,
    set_editor_in_chief,
    update_venue,
)


class TestRegistry:
    @pytest.mark.asyncio
    async def test_only_super_admin_manages_venues(self):
        db = await memory_db()
        try:
            user = await add_user(db, "user")
            with pytest.raises(AuthorizationError):
                await create_venue(db, user, VenueCreate(kind=VenueKind.JOURNAL, code="J1", name="J"))
        finally:
            await db.close()

    @pytest.mark.asyncio
    async def test_codes_are_unique(self):
        db = await memory_db()
        try:
            root = await super_admin(db)
            await add_venue(db, root, "J1")
            with pytest.raises(ValidationFailure) as exc:
                await add_venue(db, root, "J1", VenueKind.CONFERENCE)
            assert "code" in exc.value.field_errors
        finally:
            await db.close()

    @pytest.mark.asyncio
    async def test_list_filters_by_kind_and_status(self):
        db = await memory_db()
        try:
            root = await super_admin(db)
            j1 = await add_venue(db, root, "J1")
            await add_venue(db, root, "C1", VenueKind.CONFERENCE)
            updated = await update_venue(db, root, j1.venue_id, VenueUpdate(status=VenueStatus.ARCHIVED))
            assert updated.status == VenueStatus.ARCHIVED

            assert [v.code for v in await list_venues(db, kind=VenueKind.CONFERENCE)] == ["C1"]
            assert [v.code for v in await list_venues(db, status=VenueStatus.ARCHIVED)] == ["J1"]
            assert len(await list_venues(db)) == 2
        finally:
            await db.close()

    @pytest.mark.asyncio
    async def test_delete_refuses_venue_with_staff_or_manuscripts(self, storage):
        db = await memory_db()
        try:
            root = await super_admin(db)
            staffed = await add_venue(db, root, "J1")
            used = await add_venue(db, root, "J2")
            empty = await add_venue(db, root, "J3")
            await add_editor(db, root, "ed", staffed.venue_id)
            author = await add_user(db, "author")
            await submit(db, author, storage, [used.venue_id])

            for venue in (staffed, used):
                with pytest.raises(ValidationFailure):
                    await delete_venue(db, root, venue.venue_id)

            await delete_venue(db, root, empty.venue_id)
            with pytest.raises(NotFoundError):
                await delete_venue(db, root, empty.venue_id)
        finally:
            await db.close()


class TestStaff:
    @pytest.mark.asyncio
    async def test_editor_in_chief_is_promoted_and_exclusive(self):
        db = await memory_db()
        try:
            root = await super_admin(db)
            j1 = await add_venue(db, root, "J1")
            j2 = await add_venue(db, root, "J2")
            chief = await add_chief(db, root, "chief", j1.venue_id)

            assert chief.role == ActorRole.ADMIN
            assert chief.managed_venue_id == j1.venue_id
            assert await get_editor_in_chief_id(db, j1.venue_id) == "chief"

            with pytest.raises(ValidationFailure):
                await set_editor_in_chief(db, root, j2.venue_id, "chief")
            with pytest.raises(NotFoundError):
                await set_editor_in_chief(db, root, j2.venue_id, "ghost")

            await set_editor_in_chief(db, root, j1.venue_id, None)
            assert await get_editor_in_chief_id(db, j1.venue_id) is None
        finally:
            await db.close()

    @pytest.mark.asyncio
    async def test_reviewer_membership(self):
        db = await memory_db()
        try:
            root = await super_admin(db)
            j1 = await add_venue(db, root, "J1")
            j2 = await add_venue(db, root, "J2")
            chief = await add_chief(db, root, "chief", j1.venue_id)
            await add_user(db, "ed")

            await add_reviewer(db, chief, j1.venue_id, "ed")
            assert await list_reviewer_ids(db, j1.venue_id) == ["ed"]
            assert (await get_user(db, "ed")).role == ActorRole.REVIEWER

            with pytest.raises(AuthorizationError):
                await add_reviewer(db, chief, j2.venue_id, "ed")
            with pytest.raises(NotFoundError):
                await add_reviewer(db, root, j2.venue_id, "ghost")

            await remove_reviewer(db, chief, j1.venue_id, "ed")
            assert await list_reviewer_ids(db, j1.venue_id) == []
            with pytest.raises(NotFoundError):
                await remove_reviewer(db, chief, j1.venue_id, "ed")
        finally:
            await db.close()


class TestPool:
    @pytest.mark.asyncio
    async def test_pool_primitives(self, storage):
        db = await memory_db()
        try:
            root = await super_admin(db)
            j1 = await add_venue(db, root, "J1")
            j2 = await add_venue(db, root, "J2")
            author = await add_user(db, "author")
            m = await submit(db, author, storage, [j1.venue_id])

            await add_to_pool(db, m.manuscript_id, [j2.venue_id, j1.venue_id])
            assert await get_pool(db, m.manuscript_id) == [j1.venue_id, j2.venue_id]

            assert await remove_from_pool(db, m.manuscript_id, j2.venue_id) is True
            assert await remove_from_pool(db, m.manuscript_id, j2.venue_id) is False
            await db.commit()
            assert await get_pool(db, m.manuscript_id) == [j1.venue_id]
        finally:
            await db.close()
