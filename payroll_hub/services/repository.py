"""
Payroll Document Hub - Repositories

Keyed document stores used by every service. The same interface is backed by:
- MongoRepository: a motor collection (production)
- InMemoryRepository: a dict (tests, single-instance tooling)

Filters are Mongo-style query dicts in both implementations so services can
build one query and run it anywhere. The in-memory matcher supports the
operators the services use: equality on (dotted) paths, $in, $nin, $ne,
$gt, $gte, $lt, $lte, $exists, $regex, $all, $or.
"""

import copy
import logging
import re
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError as MongoDuplicateKeyError

logger = logging.getLogger(__name__)

Predicate = Callable[[Dict[str, Any]], bool]
SortSpec = Sequence[Tuple[str, int]]

_MISSING = object()


class DuplicateKeyError(Exception):
    """Raised by insert() when the key already exists."""


# =============================================================================
# QUERY MATCHING
# =============================================================================

def get_path(document: Dict[str, Any], path: str, default: Any = _MISSING) -> Any:
    """Resolve a dotted path ("approval_info.approved_by")."""
    current: Any = document
    for part in path.split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        else:
            return default
    return current


def _compare(value: Any, op: str, operand: Any) -> bool:
    if op == "$exists":
        return (value is not _MISSING) == bool(operand)
    if op == "$ne":
        if isinstance(value, list):
            return operand not in value
        return (None if value is _MISSING else value) != operand
    if op == "$in":
        if isinstance(value, list):
            return any(v in operand for v in value)
        return (None if value is _MISSING else value) in operand
    if op == "$nin":
        if isinstance(value, list):
            return not any(v in operand for v in value)
        return (None if value is _MISSING else value) not in operand
    if op == "$all":
        return isinstance(value, list) and all(v in value for v in operand)
    if op == "$regex":
        return isinstance(value, str) and re.search(operand, value) is not None
    if value is _MISSING or value is None:
        return False
    try:
        if op == "$gt":
            return value > operand
        if op == "$gte":
            return value >= operand
        if op == "$lt":
            return value < operand
        if op == "$lte":
            return value <= operand
    except TypeError:
        return False
    raise ValueError(f"Unsupported query operator: {op}")


def matches_query(document: Dict[str, Any], query: Optional[Dict[str, Any]]) -> bool:
    """Evaluate a Mongo-style query against a plain dict."""
    if not query:
        return True
    for key, condition in query.items():
        if key == "$or":
            if not any(matches_query(document, sub) for sub in condition):
                return False
            continue
        if key == "$and":
            if not all(matches_query(document, sub) for sub in condition):
                return False
            continue

        value = get_path(document, key)
        if isinstance(condition, dict) and condition and all(k.startswith("$") for k in condition):
            for op, operand in condition.items():
                if op == "$options":
                    continue
                if op == "$regex" and "i" in condition.get("$options", ""):
                    operand = f"(?i){operand}"
                if not _compare(value, op, operand):
                    return False
        else:
            if isinstance(value, list) and not isinstance(condition, list):
                if condition not in value:
                    return False
            elif (None if value is _MISSING else value) != condition:
                return False
    return True


def _sort_key(path: str):
    def key(document: Dict[str, Any]):
        value = get_path(document, path, None)
        # None sorts first, mixed types compare by their string form
        return (value is not None, value if isinstance(value, (int, float, str)) else str(value))
    return key


# =============================================================================
# INTERFACE
# =============================================================================

class Repository(ABC):
    """
    Keyed document store.

    get/set/delete/list_by_predicate is the minimal keyed-store contract;
    find/count/insert add server-side filtering where the backend supports it.
    """

    def __init__(self, key_field: str):
        self.key_field = key_field

    @abstractmethod
    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        """Fetch one record by key."""

    @abstractmethod
    async def set(self, key: str, value: Dict[str, Any]) -> None:
        """Upsert a record under `key`."""

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Hard delete. Returns False when nothing was removed."""

    @abstractmethod
    async def insert(self, value: Dict[str, Any]) -> None:
        """Create-only write. Raises DuplicateKeyError when the key exists."""

    @abstractmethod
    async def update(self, key: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Set (dotted) fields on an existing record. Returns the updated record."""

    @abstractmethod
    async def find(
        self,
        query: Optional[Dict[str, Any]] = None,
        sort: Optional[SortSpec] = None,
        skip: int = 0,
        limit: int = 0,
    ) -> List[Dict[str, Any]]:
        """Records matching a Mongo-style query."""

    @abstractmethod
    async def count(self, query: Optional[Dict[str, Any]] = None) -> int:
        """Number of records matching `query`."""

    async def list_by_predicate(self, predicate: Predicate, limit: int = 0) -> List[Dict[str, Any]]:
        """Records for which `predicate(record)` is true."""
        results = []
        for record in await self.find():
            if predicate(record):
                results.append(record)
                if limit and len(results) >= limit:
                    break
        return results

    async def find_one(self, query: Dict[str, Any], sort: Optional[SortSpec] = None) -> Optional[Dict[str, Any]]:
        found = await self.find(query, sort=sort, limit=1)
        return found[0] if found else None

    async def ping(self) -> bool:
        return True


# =============================================================================
# IN-MEMORY
# =============================================================================

class InMemoryRepository(Repository):
    """Dict-backed repository. Returns copies so callers never alias stored state."""

    def __init__(self, key_field: str, initial: Optional[List[Dict[str, Any]]] = None):
        super().__init__(key_field)
        self._items: Dict[str, Dict[str, Any]] = {}
        for item in initial or []:
            self._items[item[key_field]] = copy.deepcopy(item)

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        item = self._items.get(key)
        return copy.deepcopy(item) if item is not None else None

    async def set(self, key: str, value: Dict[str, Any]) -> None:
        stored = copy.deepcopy(value)
        stored[self.key_field] = key
        self._items[key] = stored

    async def delete(self, key: str) -> bool:
        return self._items.pop(key, None) is not None

    async def insert(self, value: Dict[str, Any]) -> None:
        key = value[self.key_field]
        if key in self._items:
            raise DuplicateKeyError(f"{self.key_field}={key} already exists")
        self._items[key] = copy.deepcopy(value)

    async def update(self, key: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        item = self._items.get(key)
        if item is None:
            return None
        for path, value in fields.items():
            target = item
            parts = path.split(".")
            for part in parts[:-1]:
                if not isinstance(target.get(part), dict):
                    target[part] = {}
                target = target[part]
            target[parts[-1]] = copy.deepcopy(value)
        return copy.deepcopy(item)

    async def find(self, query=None, sort=None, skip=0, limit=0):
        matched = [item for item in self._items.values() if matches_query(item, query)]
        for path, direction in reversed(list(sort or [])):
            matched.sort(key=_sort_key(path), reverse=direction < 0)
        if skip:
            matched = matched[skip:]
        if limit:
            matched = matched[:limit]
        return [copy.deepcopy(item) for item in matched]

    async def count(self, query=None) -> int:
        return sum(1 for item in self._items.values() if matches_query(item, query))

    async def list_by_predicate(self, predicate: Predicate, limit: int = 0) -> List[Dict[str, Any]]:
        results = []
        for item in self._items.values():
            if predicate(item):
                results.append(copy.deepcopy(item))
                if limit and len(results) >= limit:
                    break
        return results


# =============================================================================
# MONGODB (motor)
# =============================================================================

class MongoRepository(Repository):
    """Repository backed by a motor AsyncIOMotorCollection."""

    def __init__(self, collection, key_field: str):
        super().__init__(key_field)
        self.collection = collection

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        return await self.collection.find_one({self.key_field: key}, {"_id": 0})

    async def set(self, key: str, value: Dict[str, Any]) -> None:
        document = {k: v for k, v in value.items() if k != "_id"}
        document[self.key_field] = key
        await self.collection.replace_one({self.key_field: key}, document, upsert=True)

    async def delete(self, key: str) -> bool:
        result = await self.collection.delete_one({self.key_field: key})
        return result.deleted_count > 0

    async def insert(self, value: Dict[str, Any]) -> None:
        try:
            # insert_one mutates its argument with _id
            await self.collection.insert_one(dict(value))
        except MongoDuplicateKeyError as e:
            raise DuplicateKeyError(str(e)) from e

    async def update(self, key: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        return await self.collection.find_one_and_update(
            {self.key_field: key},
            {"$set": fields},
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )

    async def find(self, query=None, sort=None, skip=0, limit=0):
        cursor = self.collection.find(query or {}, {"_id": 0})
        if sort:
            cursor = cursor.sort(list(sort))
        if skip:
            cursor = cursor.skip(skip)
        if limit:
            cursor = cursor.limit(limit)
        return await cursor.to_list(limit or None)

    async def count(self, query=None) -> int:
        return await self.collection.count_documents(query or {})

    async def list_by_predicate(self, predicate: Predicate, limit: int = 0) -> List[Dict[str, Any]]:
        results = []
        async for record in self.collection.find({}, {"_id": 0}):
            if predicate(record):
                results.append(record)
                if limit and len(results) >= limit:
                    break
        return results

    async def ping(self) -> bool:
        await self.collection.database.command("ping")
        return True
