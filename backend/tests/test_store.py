import asyncio
from datetime import timedelta

import pytest

from conftest import T0
from core.store import (
    DESCENDING,
    DuplicateKeyError,
    MemoryStore,
    TransactionConflict,
    apply_update,
    keyset_filter,
    matches,
)


def test_matches_list_field_means_contains():
    doc = {"targeted_users": ["u1", "u2"], "read_status": {"u1": False}}
    assert matches(doc, {"targeted_users": "u2"})
    assert not matches(doc, {"targeted_users": "u3"})
    assert matches(doc, {"read_status.u1": False})
    assert not matches(doc, {"read_status.u2": False})
    assert matches(doc, {"is_archived.u1": {"$ne": True}})


def test_matches_operators_and_or():
    doc = {"status": "pending", "scheduled_at": T0}
    due = {"$or": [
        {"status": "pending", "scheduled_at": {"$lte": T0}},
        {"status": "sending"},
    ]}
    assert matches(doc, due)
    assert not matches(doc, {"scheduled_at": {"$lt": T0}})
    assert matches(doc, {"status": {"$in": ["pending", "sent"]}})
    assert matches(doc, {"lease_holder": {"$exists": False}})


def test_apply_update_set_inc_unset():
    doc = {"attempts": 1, "read_status": {"u1": False}, "lease_holder": "sch_1"}
    apply_update(doc, {
        "$set": {"read_status.u1": True},
        "$inc": {"attempts": 1},
        "$unset": {"lease_holder": ""},
    })
    assert doc == {"attempts": 2, "read_status": {"u1": True}}


def test_apply_update_add_to_set_keeps_order_and_skips_duplicates():
    doc = {"delivered_to": ["u1"]}
    apply_update(doc, {"$addToSet": {"delivered_to": {"$each": ["u2", "u1", "u3"]}}})
    assert doc["delivered_to"] == ["u1", "u2", "u3"]

    apply_update(doc, {"$addToSet": {"delivered_to": "u4", "tags": "x"}})
    assert doc == {"delivered_to": ["u1", "u2", "u3", "u4"], "tags": ["x"]}


def test_keyset_filter_orders_by_created_at_then_id():
    sort = [("created_at", DESCENDING), ("id", DESCENDING)]
    anchor = {"created_at": T0, "id": "b"}
    filters = keyset_filter(sort, anchor)
    assert matches({"created_at": T0 - timedelta(seconds=1), "id": "z"}, filters)
    assert matches({"created_at": T0, "id": "a"}, filters)
    assert not matches({"created_at": T0, "id": "c"}, filters)
    assert not matches({"created_at": T0 + timedelta(seconds=1), "id": "a"}, filters)


async def test_find_sort_limit_start_after(store):
    for i in range(5):
        await store.insert("notifications", {"id": f"n{i}", "created_at": T0 + timedelta(minutes=i)})
    sort = [("created_at", DESCENDING), ("id", DESCENDING)]
    first = await store.find("notifications", {}, sort=sort, limit=2)
    assert [d["id"] for d in first] == ["n4", "n3"]
    rest = await store.find("notifications", {}, sort=sort, start_after=first[-1])
    assert [d["id"] for d in rest] == ["n2", "n1", "n0"]


async def test_unique_fields_and_get_or_create(store):
    await store.insert("notifications", {"id": "n1", "dedupe_key": "new_user:u1"})
    with pytest.raises(DuplicateKeyError):
        await store.insert("notifications", {"id": "n2", "dedupe_key": "new_user:u1"})
    # Plusieurs documents sans clé : autorisé (index sparse)
    await store.insert("notifications", {"id": "n3"})
    await store.insert("notifications", {"id": "n4"})

    doc = await store.get_or_create("user_connections", {"uid": "u1"}, {"id": "ucn_a", "uid": "u1"})
    again = await store.get_or_create("user_connections", {"uid": "u1"}, {"id": "ucn_b", "uid": "u1"})
    assert doc["id"] == again["id"] == "ucn_a"


async def test_conditional_update_checks_precondition(store):
    await store.insert("notifications", {"id": "n1", "status": "pending"})
    assert await store.conditional_update("notifications", "n1", {"status": "sent"}, {"$set": {"status": "read"}}) is None
    updated = await store.conditional_update("notifications", "n1", {"status": "pending"}, {"$set": {"status": "sending"}})
    assert updated["status"] == "sending"
    assert await store.conditional_update("notifications", "missing", {}, {"$set": {"x": 1}}) is None


async def test_returned_documents_are_copies(store):
    await store.insert("users", {"id": "usr_1", "uid": "u1", "tags": ["a"]})
    doc = await store.get("users", "usr_1")
    doc["tags"].append("b")
    assert (await store.get("users", "usr_1"))["tags"] == ["a"]


async def test_transaction_commits_all_writes_or_none(store):
    await store.insert("user_connections", {"id": "a", "n": 0})
    await store.insert("user_connections", {"id": "b", "n": 0})

    async def bump(tx):
        for doc_id in ("a", "b"):
            doc = await tx.get("user_connections", doc_id)
            doc["n"] += 1
            await tx.set("user_connections", doc_id, doc)

    await store.run_transaction(bump)
    assert (await store.get("user_connections", "a"))["n"] == 1

    async def failing(tx):
        doc = await tx.get("user_connections", "a")
        doc["n"] = 99
        await tx.set("user_connections", "a", doc)
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        await store.run_transaction(failing)
    assert (await store.get("user_connections", "a"))["n"] == 1


async def test_concurrent_transactions_conflict(store):
    await store.insert("user_connections", {"id": "a", "n": 0})

    async def increment(tx):
        doc = await tx.get("user_connections", "a")
        await asyncio.sleep(0)
        doc["n"] += 1
        await tx.set("user_connections", "a", doc)

    results = await asyncio.gather(
        store.run_transaction(increment),
        store.run_transaction(increment),
        return_exceptions=True,
    )
    conflicts = [r for r in results if isinstance(r, TransactionConflict)]
    assert len(conflicts) == 1
    assert (await store.get("user_connections", "a"))["n"] == 1


async def test_memory_store_without_unique_fields():
    store = MemoryStore(unique_fields={})
    await store.insert("notifications", {"id": "n1", "dedupe_key": "k"})
    await store.insert("notifications", {"id": "n2", "dedupe_key": "k"})
    assert await store.count("notifications", {"dedupe_key": "k"}) == 2
