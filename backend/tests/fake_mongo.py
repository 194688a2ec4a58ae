"""
In-memory stand-in for the Motor client used by the ledger tests.

Covers the part of the Motor API the services touch: awaitable sessions,
snapshot-based transactions (rolled back when the block raises, optionally
failing at commit), $set / $inc / $unset updates, and equality / $in / $ne
/ $exists filters.
"""

from bson import Decimal128, ObjectId
from decimal import Decimal
from pymongo.errors import DuplicateKeyError, OperationFailure
from typing import Any, Dict, List, Optional


class InsertOneResult:
    def __init__(self, inserted_id):
        self.inserted_id = inserted_id


class InsertManyResult:
    def __init__(self, inserted_ids):
        self.inserted_ids = inserted_ids


class UpdateResult:
    def __init__(self, matched_count: int, modified_count: int):
        self.matched_count = matched_count
        self.modified_count = modified_count


class DeleteResult:
    def __init__(self, deleted_count: int):
        self.deleted_count = deleted_count


def _clone(value):
    if isinstance(value, dict):
        return {k: _clone(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_clone(v) for v in value]
    return value


def _comparable(value):
    if isinstance(value, Decimal128):
        return value.to_decimal()
    return value


def _condition_holds(document: Dict[str, Any], key: str, condition) -> bool:
    present = key in document
    value = _comparable(document.get(key))

    if isinstance(condition, dict) and condition and all(k.startswith("$") for k in condition):
        for op, arg in condition.items():
            if op == "$in":
                if not present or value not in [_comparable(a) for a in arg]:
                    return False
            elif op == "$ne":
                if present and value == _comparable(arg):
                    return False
            elif op == "$exists":
                if bool(arg) != present:
                    return False
            else:
                raise NotImplementedError(f"Filter operator {op} not supported")
        return True

    if condition is None:
        return value is None
    return present and value == _comparable(condition)


def matches(document: Dict[str, Any], query: Optional[Dict[str, Any]]) -> bool:
    return all(_condition_holds(document, key, cond) for key, cond in (query or {}).items())


def _increment(current, delta):
    if isinstance(current, Decimal128) or isinstance(delta, Decimal128):
        return Decimal128(_comparable(current or 0) + _comparable(delta))
    if isinstance(current, Decimal) or isinstance(delta, Decimal):
        return Decimal(current or 0) + Decimal(delta)
    return (current or 0) + delta


def apply_update(document: Dict[str, Any], update: Dict[str, Any]):
    for op, fields in update.items():
        if op == "$set":
            for key, value in fields.items():
                document[key] = _clone(value)
        elif op == "$unset":
            for key in fields:
                document.pop(key, None)
        elif op == "$inc":
            for key, value in fields.items():
                document[key] = _increment(document.get(key), value)
        else:
            raise NotImplementedError(f"Update operator {op} not supported")


class FakeCursor:
    def __init__(self, documents: List[Dict[str, Any]]):
        self._documents = documents

    def sort(self, key: str, direction: int = 1):
        present = [d for d in self._documents if d.get(key) is not None]
        missing = [d for d in self._documents if d.get(key) is None]
        present.sort(key=lambda d: _comparable(d[key]), reverse=direction < 0)
        self._documents = present + missing
        return self

    def limit(self, count: int):
        if count:
            self._documents = self._documents[:count]
        return self

    async def to_list(self, length: Optional[int] = None):
        if length:
            return list(self._documents[:length])
        return list(self._documents)

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for document in self._documents:
            yield document


class FakeCollection:
    def __init__(self, name: str):
        self.name = name
        self.documents: List[Dict[str, Any]] = []
        self.unique_fields: List[str] = []
        self.fail_writes = False

    # -- test helpers -------------------------------------------------------

    def seed(self, document: Dict[str, Any]) -> Dict[str, Any]:
        """Synchronous insert for fixtures"""
        document = _clone(document)
        document.setdefault("_id", ObjectId())
        self.documents.append(document)
        return _clone(document)

    def get(self, document_id) -> Optional[Dict[str, Any]]:
        for document in self.documents:
            if document["_id"] == document_id:
                return _clone(document)
        return None

    def all(self) -> List[Dict[str, Any]]:
        return [_clone(d) for d in self.documents]

    # -- Motor API ----------------------------------------------------------

    def _check_writable(self):
        if self.fail_writes:
            raise OperationFailure(f"Writes to {self.name} are failing")

    def _check_unique(self, candidate: Dict[str, Any]):
        for field in self.unique_fields:
            if field not in candidate:
                continue
            for document in self.documents:
                if document is not candidate and document.get(field) == candidate[field]:
                    raise DuplicateKeyError(f"Duplicate key on {self.name}.{field}: {candidate[field]}")

    async def create_index(self, keys, unique: bool = False, **kwargs):
        if unique and isinstance(keys, str):
            self.unique_fields.append(keys)
        return keys if isinstance(keys, str) else "_".join(f"{k}_{d}" for k, d in keys)

    async def find_one(self, query=None, projection=None, session=None):
        for document in self.documents:
            if matches(document, query):
                return _clone(document)
        return None

    def find(self, query=None, projection=None, session=None):
        found = [_clone(d) for d in self.documents if matches(d, query)]
        if projection:
            included = {k for k, v in projection.items() if v}
            found = [{k: v for k, v in d.items() if k in included or k == "_id"} for d in found]
        return FakeCursor(found)

    async def insert_one(self, document: Dict[str, Any], session=None):
        self._check_writable()
        document.setdefault("_id", ObjectId())
        stored = _clone(document)
        self._check_unique(stored)
        self.documents.append(stored)
        return InsertOneResult(stored["_id"])

    async def insert_many(self, documents: List[Dict[str, Any]], session=None):
        self._check_writable()
        ids = []
        for document in documents:
            result = await self.insert_one(document, session=session)
            ids.append(result.inserted_id)
        return InsertManyResult(ids)

    async def update_one(self, query, update, session=None, upsert: bool = False):
        self._check_writable()
        for document in self.documents:
            if matches(document, query):
                apply_update(document, update)
                return UpdateResult(1, 1)
        return UpdateResult(0, 0)

    async def update_many(self, query, update, session=None):
        self._check_writable()
        count = 0
        for document in self.documents:
            if matches(document, query):
                apply_update(document, update)
                count += 1
        return UpdateResult(count, count)

    async def find_one_and_update(self, query, update, return_document: bool = False, session=None, **kwargs):
        self._check_writable()
        for document in self.documents:
            if matches(document, query):
                before = _clone(document)
                apply_update(document, update)
                return _clone(document) if return_document else before
        return None

    async def delete_one(self, query, session=None):
        self._check_writable()
        for index, document in enumerate(self.documents):
            if matches(document, query):
                del self.documents[index]
                return DeleteResult(1)
        return DeleteResult(0)

    async def delete_many(self, query, session=None):
        self._check_writable()
        kept = [d for d in self.documents if not matches(d, query)]
        deleted = len(self.documents) - len(kept)
        self.documents[:] = kept
        return DeleteResult(deleted)


class FakeDatabase:
    def __init__(self, name: str):
        self.name = name
        self._collections: Dict[str, FakeCollection] = {}

    def __getitem__(self, name: str) -> FakeCollection:
        if name not in self._collections:
            self._collections[name] = FakeCollection(name)
        return self._collections[name]

    def __getattr__(self, name: str) -> FakeCollection:
        if name.startswith("_"):
            raise AttributeError(name)
        return self[name]


class FakeTransaction:
    def __init__(self, session: "FakeSession"):
        self.session = session
        self.snapshot = None

    async def __aenter__(self):
        self.snapshot = self.session.client.snapshot()
        self.session.in_transaction = True
        return self

    async def __aexit__(self, exc_type, exc, tb):
        client = self.session.client
        self.session.in_transaction = False
        if exc_type is not None:
            client.restore(self.snapshot)
            client.aborted += 1
            return False
        if client.fail_next_commit:
            client.fail_next_commit = False
            client.restore(self.snapshot)
            client.aborted += 1
            raise OperationFailure("WriteConflict: transaction aborted at commit")
        client.committed += 1
        return False


class FakeSession:
    def __init__(self, client: "FakeMongoClient"):
        self.client = client
        self.in_transaction = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    def start_transaction(self):
        return FakeTransaction(self)


class FakeMongoClient:
    def __init__(self):
        self._databases: Dict[str, FakeDatabase] = {}
        self.fail_next_commit = False
        self.committed = 0
        self.aborted = 0
        self.closed = False

    def __getitem__(self, name: str) -> FakeDatabase:
        if name not in self._databases:
            self._databases[name] = FakeDatabase(name)
        return self._databases[name]

    async def start_session(self):
        return FakeSession(self)

    def close(self):
        self.closed = True

    def snapshot(self):
        return {
            db_name: {name: _clone(c.documents) for name, c in db._collections.items()}
            for db_name, db in self._databases.items()
        }

    def restore(self, snapshot):
        for db_name, db in self._databases.items():
            saved = snapshot.get(db_name, {})
            for name, collection in db._collections.items():
                collection.documents[:] = _clone(saved.get(name, []))
