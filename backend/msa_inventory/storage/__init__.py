from msa_inventory.storage.base import Collection, CollectionSpec, StorageBackend
from msa_inventory.storage.factory import create_storage
from msa_inventory.storage.json_store import JsonFileStorage
from msa_inventory.storage.mongo_store import MongoStorage

__all__ = [
    "Collection",
    "CollectionSpec",
    "StorageBackend",
    "JsonFileStorage",
    "MongoStorage",
    "create_storage",
]
