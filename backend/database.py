import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import IndexModel, ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import (
    ConnectionFailure,
    DuplicateKeyError as MongoDuplicateKeyError,
    ExecutionTimeout,
    PyMongoError,
)

from config import settings
from core.exceptions import OperationTimeoutError
from core.store import (
    DocumentStore,
    DuplicateKeyError,
    Sort,
    StoreUnavailable,
    Transaction,
    TransactionConflict,
    keyset_filter,
)

logger = logging.getLogger(__name__)

client: Optional[AsyncIOMotorClient] = None

_TRANSIENT_LABELS = ("TransientTransactionError", "UnknownTransactionCommitResult")
_WRITE_CONFLICT = 112


def _is_conflict(exc: PyMongoError) -> bool:
    if any(exc.has_error_label(label) for label in _TRANSIENT_LABELS):
        return True
    return getattr(exc, "code", None) == _WRITE_CONFLICT


class _MongoTransaction(Transaction):
    def __init__(self, database: AsyncIOMotorDatabase, session):
        self._db = database
        self._session = session

    async def get(self, collection: str, doc_id: str) -> Optional[dict]:
        return await self._db[collection].find_one(
            {"id": doc_id}, {"_id": 0}, session=self._session,
        )

    async def set(self, collection: str, doc_id: str, doc: dict) -> None:
        await self._db[collection].replace_one(
            {"id": doc_id}, dict(doc), upsert=True, session=self._session,
        )


class MongoStore(DocumentStore):
    """DocumentStore adossé à Motor. Chaque appel est borné par `timeout` secondes."""

    def __init__(self, mongo_client: AsyncIOMotorClient, database: AsyncIOMotorDatabase, timeout: float = 10.0):
        self._client = mongo_client
        self._db = database
        self.timeout = timeout

    async def _bounded(self, awaitable: Awaitable[Any]) -> Any:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout)
        except (asyncio.TimeoutError, ExecutionTimeout):
            raise OperationTimeoutError(f"Délai de {self.timeout}s dépassé (MongoDB)")
        except MongoDuplicateKeyError as e:
            raise DuplicateKeyError(str(e))
        except ConnectionFailure as e:
            raise StoreUnavailable(str(e))

    async def get(self, collection: str, doc_id: str) -> Optional[dict]:
        return await self._bounded(self._db[collection].find_one({"id": doc_id}, {"_id": 0}))

    async def find_one(self, collection: str, filters: dict) -> Optional[dict]:
        return await self._bounded(self._db[collection].find_one(filters, {"_id": 0}))

    async def find(
        self,
        collection: str,
        filters: dict,
        sort: Optional[Sort] = None,
        limit: Optional[int] = None,
        start_after: Optional[dict] = None,
    ) -> list[dict]:
        if start_after is not None and sort:
            filters = {"$and": [filters, keyset_filter(sort, start_after)]}
        cursor = self._db[collection].find(filters, {"_id": 0})
        if sort:
            cursor = cursor.sort(sort)
        if limit:
            cursor = cursor.limit(limit)
        return await self._bounded(cursor.to_list(length=limit or None))

    async def count(self, collection: str, filters: dict) -> int:
        return await self._bounded(self._db[collection].count_documents(filters))

    async def insert(self, collection: str, doc: dict) -> dict:
        # insert_one ajoute _id au dict passé : on travaille sur une copie
        await self._bounded(self._db[collection].insert_one(dict(doc)))
        return doc

    async def update_one(self, collection: str, doc_id: str, update: dict) -> bool:
        result = await self._bounded(self._db[collection].update_one({"id": doc_id}, update))
        return result.matched_count > 0

    async def update_many(self, collection: str, filters: dict, update: dict) -> int:
        result = await self._bounded(self._db[collection].update_many(filters, update))
        return result.matched_count

    async def conditional_update(
        self, collection: str, doc_id: str, precondition: dict, update: dict,
    ) -> Optional[dict]:
        return await self._bounded(self._db[collection].find_one_and_update(
            {"id": doc_id, **precondition},
            update,
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        ))

    async def get_or_create(self, collection: str, filters: dict, doc: dict) -> dict:
        on_insert = {k: v for k, v in doc.items() if k not in filters}
        try:
            return await self._bounded(self._db[collection].find_one_and_update(
                filters,
                {"$setOnInsert": on_insert},
                projection={"_id": 0},
                upsert=True,
                return_document=ReturnDocument.AFTER,
            ))
        except DuplicateKeyError:
            # Deux upserts concurrents : l'index unique a tranché, on relit
            return await self.find_one(collection, filters)

    async def run_transaction(self, fn: Callable[[Transaction], Awaitable[Any]]) -> Any:
        async def _run() -> Any:
            async with await self._client.start_session() as session:
                async with session.start_transaction():
                    return await fn(_MongoTransaction(self._db, session))

        try:
            return await self._bounded(_run())
        except PyMongoError as e:
            if _is_conflict(e):
                raise TransactionConflict(str(e))
            raise

    async def create_indexes(self) -> None:
        collections_to_index = {
            "users": [
                IndexModel([("uid", 1)], unique=True),
                IndexModel([("email", 1)], sparse=True),
            ],
            "user_connections": [
                IndexModel([("id", 1)], unique=True),
                IndexModel([("uid", 1)], unique=True),
            ],
            "notifications": [
                IndexModel([("id", 1)], unique=True),
                IndexModel([("user_id", 1)]),
                IndexModel([("targeted_users", ASCENDING), ("created_at", DESCENDING), ("id", DESCENDING)]),
                IndexModel([("status", 1), ("scheduled_at", 1)]),
                IndexModel([("created_at", 1)]),
                IndexModel([("dedupe_key", 1)], unique=True, sparse=True),
            ],
        }

        for collection_name, index_models in collections_to_index.items():
            try:
                await self._db[collection_name].create_indexes(index_models)
                logger.info(f"Indexes created for collection: {collection_name}")
            except Exception as e:
                logger.error(f"Failed to create indexes for collection {collection_name}: {e}")

        logger.info("All MongoDB indexes creation attempts completed.")


async def connect_db() -> MongoStore:
    global client
    client = AsyncIOMotorClient(
        settings.MONGO_URL,
        serverSelectionTimeoutMS=5000,
        connectTimeoutMS=10000,
        tz_aware=True,
    )
    store = MongoStore(client, client[settings.DB_NAME], timeout=settings.STORE_TIMEOUT_SECONDS)
    logger.info(f"Connected to MongoDB: {settings.DB_NAME}")
    try:
        await store.create_indexes()
    except Exception as e:
        logger.warning(f"Could not create indexes (non-blocking): {e}")
    return store


async def close_db():
    global client
    if client:
        client.close()
        client = None
        logger.info("MongoDB connection closed")
