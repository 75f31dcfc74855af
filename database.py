"""
Persistent key-value storage for the store snapshots.

Every collection is kept as one serialized blob under a fixed key. Two
backends are available: an in-process dict (default) and MongoDB, where each
key is a single document in one collection.
"""

import logging
import os
from typing import Dict, Optional

from pymongo import MongoClient
from pymongo.errors import PyMongoError

logger = logging.getLogger(__name__)


class PersistenceError(Exception):
    """The backing store failed to read or write a key."""


class MemoryStore:
    name = "memory"

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def clear(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self):
        return sorted(self._data)


class MongoStore:
    """Key-value store backed by a single MongoDB collection."""

    def __init__(self, collection):
        self.collection = collection
        self.name = f"mongodb:{collection.full_name}"

    @classmethod
    def from_url(cls, url: str, database_name: str, collection_name: str = "kv"):
        client = MongoClient(url, serverSelectionTimeoutMS=5000)
        return cls(client[database_name][collection_name])

    def get(self, key: str) -> Optional[str]:
        try:
            doc = self.collection.find_one({"_id": key})
        except PyMongoError as e:
            raise PersistenceError(f"Failed to read {key}: {e}") from e
        if not doc:
            return None
        return doc.get("value")

    def set(self, key: str, value: str) -> None:
        try:
            self.collection.replace_one({"_id": key}, {"_id": key, "value": value}, upsert=True)
        except PyMongoError as e:
            raise PersistenceError(f"Failed to write {key}: {e}") from e

    def clear(self, key: str) -> None:
        try:
            self.collection.delete_one({"_id": key})
        except PyMongoError as e:
            raise PersistenceError(f"Failed to clear {key}: {e}") from e

    def keys(self):
        try:
            return sorted(doc["_id"] for doc in self.collection.find({}, {"_id": 1}))
        except PyMongoError as e:
            raise PersistenceError(f"Failed to list keys: {e}") from e


def create_store():
    """Use MongoDB when DATABASE_URL is set, otherwise keep everything in memory."""
    url = os.getenv("DATABASE_URL")
    if not url:
        logger.info("DATABASE_URL not set, using in-memory store")
        return MemoryStore()
    database_name = os.getenv("DATABASE_NAME", "pterohub")
    logger.info("Using MongoDB store (database=%s)", database_name)
    return MongoStore.from_url(url, database_name)
