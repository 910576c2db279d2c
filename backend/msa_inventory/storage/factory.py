# backend/msa_inventory/storage/factory.py
import logging
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorClient

from msa_inventory.core.clock import Clock
from msa_inventory.core.config import Settings
from msa_inventory.storage.base import StorageBackend
from msa_inventory.storage.json_store import JsonFileStorage
from msa_inventory.storage.mongo_store import MongoStorage

logger = logging.getLogger(__name__)


def create_storage(settings: Settings, clock: Optional[Clock] = None,
                   client: Optional[AsyncIOMotorClient] = None) -> StorageBackend:
    """Build the backend named by ``settings.STORAGE_MODE``"""
    timeout = settings.STORAGE_TIMEOUT_SECONDS
    if settings.STORAGE_MODE == "mongodb":
        if client is None:
            client = AsyncIOMotorClient(
                settings.MONGO_CONNECTION_STRING,
                serverSelectionTimeoutMS=int(timeout * 1000),
                socketTimeoutMS=int(timeout * 1000),
            )
        return MongoStorage(client, settings.MONGO_DATABASE, clock=clock, timeout=timeout)
    if settings.STORAGE_MODE == "json":
        return JsonFileStorage(settings.DATA_DIR, clock=clock, timeout=timeout)
    raise ValueError(f"Unknown storage mode: {settings.STORAGE_MODE}")
