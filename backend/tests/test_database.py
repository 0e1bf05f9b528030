import asyncio

import pytest
from pymongo.errors import (
    DuplicateKeyError as MongoDuplicateKeyError,
    ExecutionTimeout,
    OperationFailure,
    PyMongoError,
    ServerSelectionTimeoutError,
)

from core.exceptions import OperationTimeoutError
from core.store import DESCENDING, DuplicateKeyError, StoreUnavailable, TransactionConflict
from database import MongoStore


# ── Doublures Motor ───────────────────────────────────────────────────────────

class StubCursor:
    def __init__(self, docs):
        self.docs = docs
        self.sorted_by = None
        self.limited_to = None

    def sort(self, sort):
        self.sorted_by = sort
        return self

    def limit(self, limit):
        self.limited_to = limit
        return self

    async def to_list(self, length=None):
        return list(self.docs)


class StubCollection:
    """Chaque méthode rejoue le résultat (ou l'exception) configuré."""

    def __init__(self, **results):
        self.results = results
        self.calls = []

    async def _reply(self, name, *args, **kwargs):
        self.calls.append((name, args, kwargs))
        result = self.results.get(name)
        if isinstance(result, BaseException):
            raise result
        if callable(result):
            return await result()
        return result

    def find_one(self, *args, **kwargs):
        return self._reply("find_one", *args, **kwargs)

    def find_one_and_update(self, *args, **kwargs):
        return self._reply("find_one_and_update", *args, **kwargs)

    def insert_one(self, *args, **kwargs):
        return self._reply("insert_one", *args, **kwargs)

    def find(self, filters, projection=None):
        self.calls.append(("find", (filters, projection), {}))
        self.cursor = StubCursor(self.results.get("find", []))
        return self.cursor


class StubDatabase(dict):
    def __missing__(self, name):
        self[name] = StubCollection()
        return self[name]


class StubSession:
    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def start_transaction(self):
        return self


class StubClient:
    async def start_session(self):
        return StubSession()


def mongo_store(timeout: float = 1.0, **collections) -> MongoStore:
    return MongoStore(StubClient(), StubDatabase(collections), timeout=timeout)


# ── Délais et erreurs réseau ──────────────────────────────────────────────────

async def test_slow_call_raises_operation_timeout():
    async def slow():
        await asyncio.sleep(1)

    store = mongo_store(timeout=0.01, users=StubCollection(find_one=slow))
    with pytest.raises(OperationTimeoutError):
        await store.get("users", "usr_1")


async def test_server_side_execution_timeout_is_operation_timeout():
    store = mongo_store(users=StubCollection(find_one=ExecutionTimeout("operation exceeded time limit")))
    with pytest.raises(OperationTimeoutError):
        await store.find_one("users", {"uid": "u1"})


async def test_unreachable_server_is_store_unavailable():
    store = mongo_store(users=StubCollection(find_one=ServerSelectionTimeoutError("no primary")))
    with pytest.raises(StoreUnavailable):
        await store.get("users", "usr_1")


async def test_duplicate_key_is_mapped():
    store = mongo_store(notifications=StubCollection(insert_one=MongoDuplicateKeyError("E11000 duplicate key")))
    with pytest.raises(DuplicateKeyError):
        await store.insert("notifications", {"id": "ntf_1", "dedupe_key": "new_user:u1"})


# ── Transactions ──────────────────────────────────────────────────────────────

@pytest.mark.parametrize("exc", [
    OperationFailure("WriteConflict", code=112),
    PyMongoError("transaction aborted", error_labels=["TransientTransactionError"]),
    PyMongoError("commit unknown", error_labels=["UnknownTransactionCommitResult"]),
])
async def test_transient_transaction_errors_are_conflicts(exc):
    store = mongo_store()

    async def body(tx):
        raise exc

    with pytest.raises(TransactionConflict):
        await store.run_transaction(body)


async def test_other_transaction_errors_propagate():
    store = mongo_store()

    async def body(tx):
        raise OperationFailure("not authorized", code=13)

    with pytest.raises(OperationFailure):
        await store.run_transaction(body)


async def test_transaction_reads_through_session():
    doc = {"id": "ucn_1", "uid": "u1"}
    store = mongo_store(user_connections=StubCollection(find_one=lambda: _value(doc)))

    async def body(tx):
        return await tx.get("user_connections", "ucn_1")

    assert await store.run_transaction(body) == doc
    name, args, kwargs = store._db["user_connections"].calls[0]
    assert args[0] == {"id": "ucn_1"}
    assert isinstance(kwargs["session"], StubSession)


async def _value(value):
    return value


# ── Lectures / écritures ──────────────────────────────────────────────────────

async def test_get_or_create_rereads_after_concurrent_upsert():
    existing = {"id": "ucn_other", "uid": "u1"}
    collection = StubCollection(
        find_one_and_update=MongoDuplicateKeyError("E11000 duplicate key"),
        find_one=lambda: _value(existing),
    )
    store = mongo_store(user_connections=collection)

    result = await store.get_or_create("user_connections", {"uid": "u1"}, {"id": "ucn_new", "uid": "u1"})
    assert result == existing
    assert [call[0] for call in collection.calls] == ["find_one_and_update", "find_one"]
    assert collection.calls[0][1][1] == {"$setOnInsert": {"id": "ucn_new"}}


async def test_conditional_update_merges_precondition_with_id():
    collection = StubCollection(find_one_and_update=None)
    store = mongo_store(notifications=collection)

    assert await store.conditional_update(
        "notifications", "ntf_1", {"status": "pending"}, {"$set": {"status": "sending"}},
    ) is None
    assert collection.calls[0][1][0] == {"id": "ntf_1", "status": "pending"}


async def test_find_applies_keyset_sort_and_limit():
    collection = StubCollection(find=[{"id": "ntf_1"}])
    store = mongo_store(notifications=collection)
    sort = [("created_at", DESCENDING), ("id", DESCENDING)]
    anchor = {"id": "ntf_9", "created_at": 5}

    docs = await store.find("notifications", {"targeted_users": "u1"}, sort=sort, limit=20, start_after=anchor)
    assert docs == [{"id": "ntf_1"}]
    filters, projection = collection.calls[0][1]
    assert filters["$and"][0] == {"targeted_users": "u1"}
    assert projection == {"_id": 0}
    assert (collection.cursor.sorted_by, collection.cursor.limited_to) == (sort, 20)
