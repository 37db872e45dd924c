"""
Shared pytest fixtures.
"""

import copy
import logging
import os
import sys
import threading
import uuid
from typing import Any, Dict
from unittest.mock import MagicMock

import pytest

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from bson import ObjectId
from bson.son import SON
from pymongo import MongoClient, ReturnDocument
from pymongo.errors import PyMongoError
from pymongo.results import DeleteResult, InsertOneResult, UpdateResult

logger = logging.getLogger(__name__)


class FakeIndexes:
    """Tracks create_index calls so list_indexes reflects them."""

    def __init__(self):
        self.indexes = [{"name": "_id_", "key": SON([("_id", 1)])}]

    def create_index(self, keys, name=None, **kwargs):
        key = SON(keys)
        # Same key pattern under another name is a no-op
        for existing in self.indexes:
            if list(existing["key"].items()) == list(key.items()):
                return existing["name"]
        self.indexes.append({"name": name, "key": key})
        return name

    def list_indexes(self):
        return iter(list(self.indexes))


_MISSING = object()

_COMPARISONS = {
    "$eq": lambda value, operand: value == operand,
    "$ne": lambda value, operand: value != operand,
    "$lt": lambda value, operand: value < operand,
    "$lte": lambda value, operand: value <= operand,
    "$gt": lambda value, operand: value > operand,
    "$gte": lambda value, operand: value >= operand,
}


def _lookup(document, path):
    value = document
    for part in path.split("."):
        if not isinstance(value, dict) or part not in value:
            return _MISSING
        value = value[part]
    return value


def _matches(document, query):
    for path, condition in query.items():
        value = _lookup(document, path)
        if isinstance(condition, dict) and condition and all(k.startswith("$") for k in condition):
            if value is _MISSING:
                return False
            if not all(_COMPARISONS[op](value, operand) for op, operand in condition.items()):
                return False
        elif value is _MISSING or value != condition:
            return False
    return True


class MemoryCollection:
    """
    In-memory collection supporting the subset of pymongo used by Queue.

    Filters support equality and comparison operators on dotted paths; updates
    support top level $set. Every operation holds a lock so claims are atomic.
    """

    def __init__(self):
        self.documents = []
        self.lock = threading.Lock()

    def _find(self, query):
        return [doc for doc in self.documents if _matches(doc, query)]

    def insert_one(self, document):
        with self.lock:
            stored = copy.deepcopy(dict(document))
            stored.setdefault("_id", ObjectId())
            self.documents.append(stored)
            return InsertOneResult(stored["_id"], True)

    def find_one_and_update(self, query, update, projection=None, sort=None,
                            return_document=ReturnDocument.BEFORE):
        with self.lock:
            candidates = self._find(query)
            for field, direction in reversed(sort or []):
                candidates.sort(key=lambda doc: _lookup(doc, field), reverse=direction < 0)
            if not candidates:
                return None

            document = candidates[0]
            before = copy.deepcopy(document)
            document.update(copy.deepcopy(update["$set"]))
            result = copy.deepcopy(document) if return_document == ReturnDocument.AFTER else before

            if projection:
                result = {key: value for key, value in result.items()
                          if key == "_id" or projection.get(key)}
            return result

    def update_many(self, query, update):
        with self.lock:
            modified = 0
            for document in self._find(query):
                changes = {k: v for k, v in update["$set"].items() if document.get(k, _MISSING) != v}
                if changes:
                    document.update(copy.deepcopy(changes))
                    modified += 1
            return UpdateResult({"n": modified, "nModified": modified}, True)

    def replace_one(self, query, replacement, upsert=False):
        with self.lock:
            stored = copy.deepcopy(dict(replacement))
            matched = self._find(query)
            if matched:
                stored["_id"] = matched[0]["_id"]
                self.documents[self.documents.index(matched[0])] = stored
                return UpdateResult({"n": 1, "nModified": 1}, True)
            if upsert:
                stored["_id"] = query["_id"]
                self.documents.append(stored)
                return UpdateResult({"n": 1, "nModified": 0, "upserted": stored["_id"]}, True)
            return UpdateResult({"n": 0, "nModified": 0}, True)

    def delete_one(self, query):
        with self.lock:
            matched = self._find(query)
            if matched:
                self.documents.remove(matched[0])
            return DeleteResult({"n": len(matched[:1])}, True)

    def count_documents(self, query):
        with self.lock:
            return len(self._find(query))

    def find_one(self, query=None):
        with self.lock:
            matched = self._find(query or {})
            return copy.deepcopy(matched[0]) if matched else None


@pytest.fixture
def memory_collection():
    """Collection that stores documents in memory."""
    return MemoryCollection()


@pytest.fixture
def mock_collection():
    """MagicMock standing in for a pymongo collection."""
    collection = MagicMock()
    collection.name = "messages"
    collection.find_one_and_update.return_value = None
    collection.update_many.return_value = MagicMock(modified_count=0)
    collection.insert_one.return_value = MagicMock(inserted_id=ObjectId())
    collection.count_documents.return_value = 0

    fake_indexes = FakeIndexes()
    collection.create_index.side_effect = fake_indexes.create_index
    collection.list_indexes.side_effect = fake_indexes.list_indexes
    collection.fake_indexes = fake_indexes
    return collection


@pytest.fixture(scope="session")
def mongodb_config() -> Dict[str, Any]:
    """
    Provide MongoDB configuration for integration tests.
    """
    host = os.environ.get("TEST_MONGO_HOST", "localhost")
    port = int(os.environ.get("TEST_MONGO_PORT", "27017"))
    username = os.environ.get("TEST_MONGO_USER")
    password = os.environ.get("TEST_MONGO_PASSWORD")
    database = os.environ.get("TEST_MONGO_DB", "mongo_queue_test")

    credentials = f"{username}:{password}@" if username and password else ""
    return {
        "connection_string": f"mongodb://{credentials}{host}:{port}/",
        "database_name": database,
    }


@pytest.fixture(scope="session")
def mongodb_client(mongodb_config):
    """
    MongoDB client for integration tests. Skips when no server is reachable.
    """
    client = MongoClient(mongodb_config["connection_string"], serverSelectionTimeoutMS=2000)
    try:
        client.admin.command('ping')
    except PyMongoError as e:
        client.close()
        pytest.skip(f"MongoDB not available: {e}")

    yield client

    client.close()


@pytest.fixture
def mongodb_collection(mongodb_client, mongodb_config):
    """
    Fresh collection per test, dropped afterwards.
    """
    db = mongodb_client[mongodb_config["database_name"]]
    collection = db[f"test_messages_{uuid.uuid4().hex[:8]}"]

    yield collection

    try:
        collection.drop()
    except PyMongoError as e:
        logger.warning(f"Error dropping test collection: {e}")
