"""Unit tests for actor resolution and anonymous pseudonyms."""

import pytest

from factories import add_editor, add_venue, memory_db, super_admin
from polyvenue.errors import AuthorizationError
from polyvenue.identity import (
    AnonymousActor,
    RegisteredActor,
    actor_label,
    anonymous_display_name,
    hash_ip,
    resolve_actor,
)
from polyvenue.models import ActorRole


class TestPseudonyms:
    def test_display_name_is_stable_per_ip(self):
        assert anonymous_display_name("192.0.2.1") == anonymous_display_name("192.0.2.1")
        assert anonymous_display_name("192.0.2.1") != anonymous_display_name("192.0.2.2")

    def test_display_name_shape(self):
        name = anonymous_display_name("192.0.2.1")
        assert name.startswith("Anonymous-")
        suffix = name.removeprefix("Anonymous-")
        assert len(suffix) == 6
        assert suffix == hash_ip("192.0.2.1")[:6].upper()

    def test_anonymous_actor_keys_on_hashed_ip(self):
        actor = AnonymousActor(ip="192.0.2.1")
        assert actor.is_anonymous is True
        assert actor.key == f"ip:{hash_ip('192.0.2.1')}"
        assert "192.0.2.1" not in actor.key
        assert actor.memberships() == frozenset()
        assert actor_label(actor) == actor.display_name


class TestRegisteredActor:
    def test_roles(self):
        admin = RegisteredActor(actor_id="a", role=ActorRole.ADMIN, managed_venue_id="j1")
        root = RegisteredActor(actor_id="r", role=ActorRole.SUPER_ADMIN)
        user = RegisteredActor(actor_id="u", name="Una")

        assert admin.is_admin and not admin.is_super_admin
        assert root.is_admin and root.is_super_admin
        assert not user.is_admin
        assert user.display_name == "Una"
        assert admin.memberships() == frozenset({"j1"})
        assert actor_label(user) == "u"


class TestResolveActor:
    @pytest.mark.asyncio
    async def test_resolve_loads_memberships(self):
        db = await memory_db()
        try:
            root = await super_admin(db)
            j1 = await add_venue(db, root, "J1")
            await add_editor(db, root, "ed", j1.venue_id)

            actor = await resolve_actor(db, "ed", "10.1.1.1")
            assert isinstance(actor, RegisteredActor)
            assert actor.role == ActorRole.REVIEWER
            assert actor.reviewer_venue_ids == frozenset({j1.venue_id})
            assert actor.ip == "10.1.1.1"

            guest = await resolve_actor(db, None, "10.1.1.2")
            assert isinstance(guest, AnonymousActor)
            assert guest.ip == "10.1.1.2"
        finally:
            await db.close()

    @pytest.mark.asyncio
    async def test_unknown_session_user_is_refused(self):
        db = await memory_db()
        try:
            with pytest.raises(AuthorizationError):
                await resolve_actor(db, "ghost", "10.1.1.1")
        finally:
            await db.close()
