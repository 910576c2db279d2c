# backend/msa_inventory/storage/mongo_store.py
"""
Document database backend on MongoDB through Motor.

Documents keep the contract's string ``id`` as Mongo's ``_id``; the mapping
happens only here so callers never see ``_id``.
"""
import logging
import re
from typing import Any, Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorCollection, AsyncIOMotorDatabase
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from msa_inventory.core.clock import Clock
from msa_inventory.core.exceptions import DuplicateValue, StorageFailure
from msa_inventory.storage.base import ALL_COLLECTIONS, Collection, CollectionSpec, StorageBackend

logger = logging.getLogger(__name__)


def _from_mongo(raw: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if raw is None:
        return None
    document = dict(raw)
    document["id"] = document.pop("_id")
    return document


class MongoCollection(Collection):
    def __init__(self, spec: CollectionSpec, collection: AsyncIOMotorCollection,
                 clock: Optional[Clock] = None, timeout: float = 10.0):
        super().__init__(spec, clock, timeout)
        self._collection = collection

    async def _call(self, awaitable, operation: str):
        try:
            return await self._bounded(awaitable, operation)
        except DuplicateKeyError as e:
            key_value = (e.details or {}).get("keyValue") or {}
            field, value = next(iter(key_value.items()), ("unknown", None))
            raise DuplicateValue(self.name, field, value) from e
        except PyMongoError as e:
            logger.error(f"MongoDB {operation} on {self.name} failed: {str(e)}")
            raise StorageFailure(f"Database error during {operation} on {self.name}: {e}") from e

    def _query(self, filter: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        exact, search = self._split_filter(filter)
        query: Dict[str, Any] = {}
        for key, value in exact.items():
            query["_id" if key == "id" else key] = value
        if search and self.spec.search_fields:
            pattern = {"$regex": re.escape(search), "$options": "i"}
            query["$or"] = [{field: pattern} for field in self.spec.search_fields]
        return query

    async def find_by_id(self, id: str) -> Optional[Dict[str, Any]]:
        if not id:
            return None
        raw = await self._call(self._collection.find_one({"_id": id}), "find_by_id")
        return _from_mongo(raw)

    async def find_by_field(self, field: str, value: Any) -> Optional[Dict[str, Any]]:
        key = "_id" if field == "id" else field
        raw = await self._call(self._collection.find_one({key: value}), "find_by_field")
        return _from_mongo(raw)

    async def find_all(self, filter: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        cursor = self._collection.find(self._query(filter)).sort("created_at", 1)
        raws = await self._call(cursor.to_list(length=None), "find_all")
        return [_from_mongo(raw) for raw in raws]

    async def create(self, data: Dict[str, Any]) -> Dict[str, Any]:
        document = self._new_document(data)
        stored = {k: v for k, v in document.items() if k != "id"}
        stored["_id"] = document["id"]
        await self._call(self._collection.insert_one(stored), "create")
        return document

    async def update(self, id: str, partial: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        changes = self._changes(partial)
        raw = await self._call(
            self._collection.find_one_and_update(
                {"_id": id},
                {"$set": changes},
                return_document=ReturnDocument.AFTER,
            ),
            "update",
        )
        return _from_mongo(raw)

    async def delete(self, id: str) -> bool:
        result = await self._call(self._collection.delete_one({"_id": id}), "delete")
        return result.deleted_count > 0


class MongoStorage(StorageBackend):
    mode = "mongodb"

    def __init__(self, client: AsyncIOMotorClient, database_name: str,
                 clock: Optional[Clock] = None, timeout: float = 10.0):
        self.client = client
        self.database: AsyncIOMotorDatabase = client[database_name]
        self.timeout = timeout
        for spec in ALL_COLLECTIONS:
            setattr(self, spec.name, MongoCollection(spec, self.database[spec.name], clock, timeout))

    async def connect(self) -> None:
        logger.info("Connecting to MongoDB...")
        try:
            await self.client.admin.command("ping")
            for spec in ALL_COLLECTIONS:
                collection = self.database[spec.name]
                for field in spec.filter_fields:
                    await collection.create_index(field)
                for field in spec.unique_fields:
                    # only string values are unique; missing and null keys may repeat
                    await collection.create_index(
                        field, unique=True, partialFilterExpression={field: {"$type": "string"}}
                    )
        except PyMongoError as e:
            logger.error(f"Failed to connect to MongoDB: {str(e)}")
            raise StorageFailure(f"MongoDB connection failed: {e}") from e
        logger.info("MongoDB connection successful")

    async def close(self) -> None:
        self.client.close()
        logger.info("Disconnected from MongoDB")
