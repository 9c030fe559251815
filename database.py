"""
Row stores for the roster: MongoDB (PyMongo) in deployment, an in-process
store when no database is configured.

Reads hand back validated records or raise FetchError. Writes never raise for
store failures; they report through MutationResult instead.
"""

import logging
import os
import threading
from datetime import datetime, timezone
from typing import Dict, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import ValidationError
from pymongo import MongoClient
from pymongo.errors import PyMongoError

from schemas import Family, MutationResult, Student

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

STUDENT_COLLECTION = "attendance"
FAMILY_COLLECTION = "family"


class FetchError(Exception):
    """A read against the store failed."""


class InvalidRecordError(FetchError):
    """A stored row did not match its schema."""

    def __init__(self, collection: str, row_id, error: ValidationError):
        self.collection = collection
        self.row_id = row_id
        self.error = error
        super().__init__(f"invalid row {row_id!r} in {collection}: {error.error_count()} validation error(s)")


def _parse(model, collection: str, row: dict):
    try:
        return model.model_validate(row)
    except ValidationError as e:
        logger.error("Rejected row %r from %s: %s", row.get("id"), collection, e)
        raise InvalidRecordError(collection, row.get("id"), e) from e


def _now():
    return datetime.now(timezone.utc)


# ----------------------- Repository interface -----------------------

class Repository:
    """Keyed CRUD over one collection of ``model`` records."""

    def __init__(self, name: str, model):
        self.name = name
        self.model = model

    def list(self) -> list:
        return [_parse(self.model, self.name, row) for row in self._rows()]

    def get(self, record_id: str):
        row = self._row(str(record_id))
        return None if row is None else _parse(self.model, self.name, row)

    def find_by_student(self, student_id: str):
        """Latest record whose student_id matches, or None."""
        rows = self._rows({"student_id": str(student_id)})
        return _parse(self.model, self.name, rows[-1]) if rows else None

    def _rows(self, query: Optional[dict] = None) -> List[dict]:
        raise NotImplementedError

    def _row(self, record_id: str) -> Optional[dict]:
        raise NotImplementedError

    def create(self, data: dict) -> MutationResult:
        raise NotImplementedError

    def update(self, record_id: str, data: dict) -> MutationResult:
        raise NotImplementedError

    def delete(self, record_id: str) -> MutationResult:
        raise NotImplementedError

    def _missing(self, record_id) -> MutationResult:
        return MutationResult(success=False, error=f"{self.name} record {record_id} not found", missing=True)


class MongoRepository(Repository):
    def __init__(self, db, name: str, model):
        super().__init__(name, model)
        self.collection = db[name]

    @staticmethod
    def _out(doc: dict) -> dict:
        doc["id"] = str(doc.pop("_id"))
        return doc

    def find_by_student(self, student_id: str):
        sid = str(student_id)
        # older rows keep student_id as a number
        match = {"$in": [sid, int(sid)]} if sid.isdecimal() else sid
        rows = self._rows({"student_id": match})
        return _parse(self.model, self.name, rows[-1]) if rows else None

    def _rows(self, query=None):
        try:
            docs = list(self.collection.find(query or {}).sort("_id", 1))
        except PyMongoError as e:
            logger.error("Fetching %s failed: %s", self.name, e)
            raise FetchError(f"Failed to fetch {self.name}: {e}") from e
        return [self._out(d) for d in docs]

    def _row(self, record_id):
        try:
            oid = ObjectId(record_id)
        except InvalidId:
            return None
        try:
            doc = self.collection.find_one({"_id": oid})
        except PyMongoError as e:
            logger.error("Fetching %s %s failed: %s", self.name, record_id, e)
            raise FetchError(f"Failed to fetch {self.name} {record_id}: {e}") from e
        return None if doc is None else self._out(doc)

    def create(self, data):
        doc = dict(data)
        doc["created_at"] = _now()
        try:
            res = self.collection.insert_one(doc)
        except PyMongoError as e:
            logger.error("Insert into %s failed: %s", self.name, e)
            return MutationResult(success=False, error=f"Submission failed: {e}")
        logger.info("Created %s %s", self.name, res.inserted_id)
        return MutationResult(success=True, id=str(res.inserted_id))

    def update(self, record_id, data):
        try:
            oid = ObjectId(record_id)
        except InvalidId:
            return self._missing(record_id)
        try:
            res = self.collection.update_one({"_id": oid}, {"$set": dict(data)})
        except PyMongoError as e:
            logger.error("Update of %s %s failed: %s", self.name, record_id, e)
            return MutationResult(success=False, id=str(record_id), error=f"Update failed: {e}")
        if res.matched_count == 0:
            return self._missing(record_id)
        logger.info("Updated %s %s", self.name, record_id)
        return MutationResult(success=True, id=str(record_id))

    def delete(self, record_id):
        try:
            oid = ObjectId(record_id)
        except InvalidId:
            return self._missing(record_id)
        try:
            res = self.collection.delete_one({"_id": oid})
        except PyMongoError as e:
            logger.error("Delete of %s %s failed: %s", self.name, record_id, e)
            return MutationResult(success=False, id=str(record_id), error=f"Deletion failed: {e}")
        if res.deleted_count == 0:
            return self._missing(record_id)
        logger.info("Deleted %s %s", self.name, record_id)
        return MutationResult(success=True, id=str(record_id))


class MemoryRepository(Repository):
    """Insertion-ordered dict of rows with integer ids."""

    def __init__(self, name: str, model):
        super().__init__(name, model)
        self._data: Dict[str, dict] = {}
        self._next_id = 1
        self._lock = threading.Lock()

    def _rows(self, query=None):
        with self._lock:
            rows = [dict(r) for r in self._data.values()]
        if query:
            rows = [r for r in rows if all(str(r.get(k)) == str(v) for k, v in query.items())]
        return rows

    def _row(self, record_id):
        with self._lock:
            row = self._data.get(record_id)
            return None if row is None else dict(row)

    def create(self, data):
        with self._lock:
            record_id = self._next_id
            self._next_id += 1
            self._data[str(record_id)] = {**data, "id": record_id, "created_at": _now()}
        logger.info("Created %s %s", self.name, record_id)
        return MutationResult(success=True, id=str(record_id))

    def update(self, record_id, data):
        record_id = str(record_id)
        with self._lock:
            if record_id not in self._data:
                return self._missing(record_id)
            self._data[record_id].update(data)
        logger.info("Updated %s %s", self.name, record_id)
        return MutationResult(success=True, id=record_id)

    def delete(self, record_id):
        record_id = str(record_id)
        with self._lock:
            if self._data.pop(record_id, None) is None:
                return self._missing(record_id)
        logger.info("Deleted %s %s", self.name, record_id)
        return MutationResult(success=True, id=record_id)

    def load(self, rows: List[dict]) -> None:
        """Seed raw rows as they would come back from a hosted table."""
        with self._lock:
            for row in rows:
                row = dict(row)
                if "id" not in row:
                    row["id"] = self._next_id
                self._data[str(row["id"])] = row
                if isinstance(row["id"], int):
                    self._next_id = max(self._next_id, row["id"] + 1)


# ----------------------- Stores -----------------------

class Store:
    backend = "unknown"

    def __init__(self, students: Repository, families: Repository):
        self.students = students
        self.families = families

    def status(self) -> dict:
        return {"database": self.backend, "connection_status": "Connected"}

    def close(self) -> None:
        pass


class MemoryStore(Store):
    backend = "memory"

    def __init__(self):
        super().__init__(
            MemoryRepository(STUDENT_COLLECTION, Student),
            MemoryRepository(FAMILY_COLLECTION, Family),
        )


class MongoStore(Store):
    backend = "mongodb"

    def __init__(self, url: str, name: str):
        self.client = MongoClient(url, tz_aware=True)
        self.db = self.client[name]
        super().__init__(
            MongoRepository(self.db, STUDENT_COLLECTION, Student),
            MongoRepository(self.db, FAMILY_COLLECTION, Family),
        )

    def status(self) -> dict:
        response = {
            "database": self.backend,
            "database_name": self.db.name,
            "connection_status": "Not Connected",
            "collections": [],
        }
        try:
            response["collections"] = self.db.list_collection_names()[:10]
            response["connection_status"] = "Connected"
        except PyMongoError as e:
            response["connection_status"] = f"Error: {str(e)[:50]}"
        return response

    def close(self) -> None:
        self.client.close()


def build_store() -> Store:
    if DATABASE_URL and DATABASE_NAME:
        logger.info("Using MongoDB database %s", DATABASE_NAME)
        return MongoStore(DATABASE_URL, DATABASE_NAME)
    logger.warning("DATABASE_URL/DATABASE_NAME not set, records are kept in memory only")
    return MemoryStore()
