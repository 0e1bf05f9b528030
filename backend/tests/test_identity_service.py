from services.identity_service import IdentityResolver


async def test_get_user_and_by_email(seeded_store):
    identity = IdentityResolver(seeded_store)
    assert (await identity.get_user("u2")).name == "Bob"
    assert await identity.get_user("ghost") is None

    alice = await identity.get_user_by_email(" Alice@Example.com ")
    assert alice is not None and alice.uid == "u1"
    assert await identity.get_user_by_email("nobody@example.com") is None
    assert await identity.get_user_by_email("") is None


async def test_display_name_falls_back_to_username_then_uid(seeded_store):
    identity = IdentityResolver(seeded_store)
    assert await identity.get_display_name("u1") == "Alice"
    assert await identity.get_display_name("u3") == "carol"
    assert await identity.get_display_name("ghost") == "ghost"


async def test_list_user_ids_skips_inactive_and_excluded(seeded_store):
    identity = IdentityResolver(seeded_store)
    assert await identity.list_user_ids(exclude="u1") == ["u2", "u3"]
