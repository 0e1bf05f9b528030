"""
Abstraction du stockage documentaire : contrat commun + implémentation mémoire.

Le langage de requête est celui de MongoDB (documents filtres, $set/$inc/$unset/$addToSet)
pour que services et MongoStore (database.py) partagent les mêmes filtres.
MemoryStore implémente le sous-ensemble utilisé par les services ; il sert aux
tests et au mode STORE_BACKEND=memory.
"""
import asyncio
import copy
import functools
import operator
from collections import defaultdict
from typing import Any, Awaitable, Callable, Optional

ASCENDING = 1
DESCENDING = -1

Sort = list[tuple[str, int]]


class StoreError(Exception):
    pass


class TransactionConflict(StoreError):
    """Un document lu dans la transaction a été modifié avant le commit."""


class StoreUnavailable(StoreError):
    """Erreur transitoire côté base (réseau, élection primaire...)."""


class DuplicateKeyError(StoreError):
    pass


class Transaction:
    async def get(self, collection: str, doc_id: str) -> Optional[dict]:
        raise NotImplementedError

    async def set(self, collection: str, doc_id: str, doc: dict) -> None:
        raise NotImplementedError


class DocumentStore:
    """Contrat minimal dont dépendent le graphe de connexions et les notifications."""

    async def get(self, collection: str, doc_id: str) -> Optional[dict]:
        raise NotImplementedError

    async def find_one(self, collection: str, filters: dict) -> Optional[dict]:
        raise NotImplementedError

    async def find(
        self,
        collection: str,
        filters: dict,
        sort: Optional[Sort] = None,
        limit: Optional[int] = None,
        start_after: Optional[dict] = None,
    ) -> list[dict]:
        raise NotImplementedError

    async def count(self, collection: str, filters: dict) -> int:
        raise NotImplementedError

    async def insert(self, collection: str, doc: dict) -> dict:
        raise NotImplementedError

    async def update_one(self, collection: str, doc_id: str, update: dict) -> bool:
        raise NotImplementedError

    async def update_many(self, collection: str, filters: dict, update: dict) -> int:
        raise NotImplementedError

    async def conditional_update(
        self, collection: str, doc_id: str, precondition: dict, update: dict,
    ) -> Optional[dict]:
        """Applique `update` seulement si le document vérifie `precondition`.
        Retourne le document mis à jour, ou None si la condition a échoué."""
        raise NotImplementedError

    async def get_or_create(self, collection: str, filters: dict, doc: dict) -> dict:
        raise NotImplementedError

    async def run_transaction(self, fn: Callable[[Transaction], Awaitable[Any]]) -> Any:
        raise NotImplementedError

    async def create_indexes(self) -> None:
        return None


# ── Filtres ───────────────────────────────────────────────────────────────────

_MISSING = object()


def resolve_path(doc: dict, path: str) -> Any:
    value: Any = doc
    for part in path.split("."):
        if isinstance(value, dict) and part in value:
            value = value[part]
        else:
            return _MISSING
    return value


def _equals(value: Any, expected: Any) -> bool:
    if value is _MISSING:
        return expected is None
    if isinstance(value, list) and not isinstance(expected, list):
        return expected in value
    return value == expected


def _compare(value: Any, arg: Any, op: Callable[[Any, Any], bool]) -> bool:
    if value is _MISSING or value is None or arg is None:
        return False
    try:
        return op(value, arg)
    except TypeError:
        return False


_COMPARISONS = {
    "$lt": operator.lt,
    "$lte": operator.le,
    "$gt": operator.gt,
    "$gte": operator.ge,
}


def _apply_operator(op: str, value: Any, arg: Any) -> bool:
    if op == "$eq":
        return _equals(value, arg)
    if op == "$ne":
        return not _equals(value, arg)
    if op in _COMPARISONS:
        return _compare(value, arg, _COMPARISONS[op])
    if op == "$in":
        return any(_equals(value, item) for item in arg)
    if op == "$nin":
        return not any(_equals(value, item) for item in arg)
    if op == "$exists":
        return (value is not _MISSING) == bool(arg)
    raise ValueError(f"Opérateur non supporté : {op}")


def matches(doc: dict, filters: dict) -> bool:
    for key, condition in filters.items():
        if key == "$or":
            if not any(matches(doc, clause) for clause in condition):
                return False
            continue
        if key == "$and":
            if not all(matches(doc, clause) for clause in condition):
                return False
            continue
        value = resolve_path(doc, key)
        if isinstance(condition, dict) and condition and all(k.startswith("$") for k in condition):
            if not all(_apply_operator(op, value, arg) for op, arg in condition.items()):
                return False
        elif not _equals(value, condition):
            return False
    return True


def keyset_filter(sort: Sort, anchor: dict) -> dict:
    """
    Traduit "après le document anchor" en filtre, pour un tri (created_at, id).
    Stable face aux insertions : un curseur ne saute jamais un document plus ancien.
    """
    clauses = []
    for i, (field, direction) in enumerate(sort):
        clause = {prev: anchor.get(prev) for prev, _ in sort[:i]}
        clause[field] = {"$lt" if direction == DESCENDING else "$gt": anchor.get(field)}
        clauses.append(clause)
    return {"$or": clauses}


def _compare_docs(a: dict, b: dict, sort: Sort) -> int:
    for field, direction in sort:
        va = resolve_path(a, field)
        vb = resolve_path(b, field)
        va = None if va is _MISSING else va
        vb = None if vb is _MISSING else vb
        if va == vb:
            continue
        if va is None:
            result = -1
        elif vb is None:
            result = 1
        else:
            result = -1 if va < vb else 1
        return result * direction
    return 0


# ── Mises à jour ──────────────────────────────────────────────────────────────

def _set_path(doc: dict, path: str, value: Any) -> None:
    parts = path.split(".")
    target = doc
    for part in parts[:-1]:
        if not isinstance(target.get(part), dict):
            target[part] = {}
        target = target[part]
    target[parts[-1]] = value


def _unset_path(doc: dict, path: str) -> None:
    parts = path.split(".")
    target = doc
    for part in parts[:-1]:
        target = target.get(part)
        if not isinstance(target, dict):
            return
    target.pop(parts[-1], None)


def apply_update(doc: dict, update: dict) -> None:
    for op, fields in update.items():
        if op == "$set":
            for path, value in fields.items():
                _set_path(doc, path, copy.deepcopy(value))
        elif op == "$unset":
            for path in fields:
                _unset_path(doc, path)
        elif op == "$inc":
            for path, amount in fields.items():
                current = resolve_path(doc, path)
                _set_path(doc, path, (0 if current is _MISSING or current is None else current) + amount)
        elif op == "$addToSet":
            for path, value in fields.items():
                values = value["$each"] if isinstance(value, dict) and "$each" in value else [value]
                current = resolve_path(doc, path)
                items = [] if current is _MISSING or current is None else list(current)
                for item in values:
                    if item not in items:
                        items.append(copy.deepcopy(item))
                _set_path(doc, path, items)
        elif op == "$setOnInsert":
            continue
        else:
            raise ValueError(f"Opérateur de mise à jour non supporté : {op}")


# ── Implémentation mémoire ────────────────────────────────────────────────────

DEFAULT_UNIQUE_FIELDS = {
    "user_connections": ["uid"],
    "notifications": ["dedupe_key"],
}


class _MemoryTransaction(Transaction):
    """Transaction optimiste : lectures versionnées, écritures bufferisées."""

    def __init__(self, store: "MemoryStore"):
        self._store = store
        self.reads: dict[tuple[str, str], int] = {}
        self.writes: dict[tuple[str, str], dict] = {}

    async def get(self, collection: str, doc_id: str) -> Optional[dict]:
        key = (collection, doc_id)
        if key in self.writes:
            return copy.deepcopy(self.writes[key])
        # Point de suspension : d'autres transactions peuvent s'intercaler ici
        await asyncio.sleep(0)
        self.reads.setdefault(key, self._store._versions[key])
        doc = self._store._collections[collection].get(doc_id)
        return copy.deepcopy(doc) if doc is not None else None

    async def set(self, collection: str, doc_id: str, doc: dict) -> None:
        self.writes[(collection, doc_id)] = copy.deepcopy(doc)


class MemoryStore(DocumentStore):
    def __init__(self, unique_fields: Optional[dict[str, list[str]]] = None):
        self._collections: dict[str, dict[str, dict]] = defaultdict(dict)
        self._versions: dict[tuple[str, str], int] = defaultdict(int)
        self._unique = unique_fields if unique_fields is not None else DEFAULT_UNIQUE_FIELDS

    def _write(self, collection: str, doc_id: str, doc: dict) -> None:
        self._collections[collection][doc_id] = doc
        self._versions[(collection, doc_id)] += 1

    def _check_unique(self, collection: str, doc: dict) -> None:
        for field in self._unique.get(collection, []):
            value = doc.get(field)
            if value is None:
                continue
            for other_id, other in self._collections[collection].items():
                if other_id != doc.get("id") and other.get(field) == value:
                    raise DuplicateKeyError(f"{collection}.{field}={value}")

    async def get(self, collection: str, doc_id: str) -> Optional[dict]:
        doc = self._collections[collection].get(doc_id)
        return copy.deepcopy(doc) if doc is not None else None

    async def find_one(self, collection: str, filters: dict) -> Optional[dict]:
        for doc in self._collections[collection].values():
            if matches(doc, filters):
                return copy.deepcopy(doc)
        return None

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
        docs = [doc for doc in self._collections[collection].values() if matches(doc, filters)]
        if sort:
            docs.sort(key=functools.cmp_to_key(lambda a, b: _compare_docs(a, b, sort)))
        if limit:
            docs = docs[:limit]
        return copy.deepcopy(docs)

    async def count(self, collection: str, filters: dict) -> int:
        return sum(1 for doc in self._collections[collection].values() if matches(doc, filters))

    async def insert(self, collection: str, doc: dict) -> dict:
        if doc["id"] in self._collections[collection]:
            raise DuplicateKeyError(f"{collection}.id={doc['id']}")
        self._check_unique(collection, doc)
        self._write(collection, doc["id"], copy.deepcopy(doc))
        return copy.deepcopy(doc)

    async def update_one(self, collection: str, doc_id: str, update: dict) -> bool:
        doc = self._collections[collection].get(doc_id)
        if doc is None:
            return False
        updated = copy.deepcopy(doc)
        apply_update(updated, update)
        self._write(collection, doc_id, updated)
        return True

    async def update_many(self, collection: str, filters: dict, update: dict) -> int:
        matched = [doc_id for doc_id, doc in self._collections[collection].items() if matches(doc, filters)]
        for doc_id in matched:
            updated = copy.deepcopy(self._collections[collection][doc_id])
            apply_update(updated, update)
            self._write(collection, doc_id, updated)
        return len(matched)

    async def conditional_update(
        self, collection: str, doc_id: str, precondition: dict, update: dict,
    ) -> Optional[dict]:
        doc = self._collections[collection].get(doc_id)
        if doc is None or not matches(doc, precondition):
            return None
        updated = copy.deepcopy(doc)
        apply_update(updated, update)
        self._write(collection, doc_id, updated)
        return copy.deepcopy(updated)

    async def get_or_create(self, collection: str, filters: dict, doc: dict) -> dict:
        existing = await self.find_one(collection, filters)
        if existing is not None:
            return existing
        return await self.insert(collection, doc)

    async def run_transaction(self, fn: Callable[[Transaction], Awaitable[Any]]) -> Any:
        tx = _MemoryTransaction(self)
        result = await fn(tx)
        # Commit atomique : aucun await entre la validation et l'écriture
        for key, version in tx.reads.items():
            if self._versions[key] != version:
                raise TransactionConflict(f"{key[0]}/{key[1]} modifié pendant la transaction")
        for (collection, doc_id), doc in tx.writes.items():
            self._write(collection, doc_id, doc)
        return result
