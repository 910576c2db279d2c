# backend/msa_inventory/storage/json_store.py
"""
Flat-file backend: each collection is one JSON array on disk.

Every operation is a full read-modify-write of the collection file, so each
collection serialises its operations behind an ``asyncio.Lock``. Files are
replaced atomically; a crash mid-write leaves the previous version intact.
"""
import asyncio
import json
import logging
import os
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, List, Optional

from msa_inventory.core.clock import Clock
from msa_inventory.core.exceptions import DuplicateValue, StorageFailure
from msa_inventory.storage.base import ALL_COLLECTIONS, Collection, CollectionSpec, StorageBackend

logger = logging.getLogger(__name__)


class JsonFileCollection(Collection):
    def __init__(self, spec: CollectionSpec, path: Path, clock: Optional[Clock] = None, timeout: float = 10.0):
        super().__init__(spec, clock, timeout)
        self.path = path
        self._lock = asyncio.Lock()

    @asynccontextmanager
    async def _exclusive(self, operation: str):
        await self._bounded(self._lock.acquire(), f"{operation} (waiting for lock)")
        try:
            yield
        finally:
            self._lock.release()

    def _read_sync(self) -> List[Dict[str, Any]]:
        if not self.path.exists():
            return []
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise StorageFailure(f"Collection file {self.path.name} is corrupt: {e}") from e
        except OSError as e:
            raise StorageFailure(f"Error reading {self.path.name}: {e}") from e
        if not isinstance(data, list):
            raise StorageFailure(f"Collection file {self.path.name} does not contain a list")
        return data

    def _write_sync(self, documents: List[Dict[str, Any]]) -> None:
        tmp_path = self.path.with_name(f"{self.path.name}.{uuid.uuid4().hex}.tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(documents, f, ensure_ascii=False, indent=2)
            os.replace(tmp_path, self.path)
        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            raise StorageFailure(f"Error writing {self.path.name}: {e}") from e

    async def _read(self, operation: str) -> List[Dict[str, Any]]:
        return await self._bounded(asyncio.to_thread(self._read_sync), operation)

    async def _write(self, documents: List[Dict[str, Any]], operation: str) -> None:
        """
        Persist the collection while the caller still holds the lock.

        Only the lock wait and reads are bounded by the timeout. A write thread
        cannot be interrupted, so once it has started we wait for it to finish
        and report what actually happened on disk.
        """
        writing = asyncio.ensure_future(asyncio.to_thread(self._write_sync, documents))
        try:
            await asyncio.wait_for(asyncio.shield(writing), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning(
                f"{operation} on {self.name} exceeded {self.timeout}s, waiting for the write to complete"
            )
            await writing
        except asyncio.CancelledError:
            await writing
            raise

    @staticmethod
    def _index_of(documents: List[Dict[str, Any]], id: str) -> int:
        for index, document in enumerate(documents):
            if document.get("id") == id:
                return index
        return -1

    def _check_unique(self, documents: List[Dict[str, Any]], candidate: Dict[str, Any]) -> None:
        for field in self.spec.unique_fields:
            value = candidate.get(field)
            if not isinstance(value, str):
                continue
            for document in documents:
                if document.get("id") != candidate.get("id") and document.get(field) == value:
                    raise DuplicateValue(self.name, field, value)

    async def find_by_id(self, id: str) -> Optional[Dict[str, Any]]:
        if not id:
            return None
        async with self._exclusive("find_by_id"):
            documents = await self._read("find_by_id")
        index = self._index_of(documents, id)
        return documents[index] if index != -1 else None

    async def find_by_field(self, field: str, value: Any) -> Optional[Dict[str, Any]]:
        async with self._exclusive("find_by_field"):
            documents = await self._read("find_by_field")
        return next((d for d in documents if d.get(field) == value), None)

    async def find_all(self, filter: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        exact, search = self._split_filter(filter)
        async with self._exclusive("find_all"):
            documents = await self._read("find_all")
        matched = [d for d in documents if self._matches(d, exact, search)]
        return sorted(matched, key=lambda d: d.get("created_at") or "")

    async def create(self, data: Dict[str, Any]) -> Dict[str, Any]:
        document = self._new_document(data)
        async with self._exclusive("create"):
            documents = await self._read("create")
            self._check_unique(documents, document)
            documents.append(document)
            await self._write(documents, "create")
        return document

    async def update(self, id: str, partial: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        changes = self._changes(partial)
        async with self._exclusive("update"):
            documents = await self._read("update")
            index = self._index_of(documents, id)
            if index == -1:
                return None
            merged = {**documents[index], **changes}
            self._check_unique(documents, merged)
            documents[index] = merged
            await self._write(documents, "update")
            return documents[index]

    async def delete(self, id: str) -> bool:
        async with self._exclusive("delete"):
            documents = await self._read("delete")
            remaining = [d for d in documents if d.get("id") != id]
            if len(remaining) == len(documents):
                return False
            await self._write(remaining, "delete")
        return True


class JsonFileStorage(StorageBackend):
    mode = "json"

    def __init__(self, data_dir, clock: Optional[Clock] = None, timeout: float = 10.0):
        self.data_dir = Path(data_dir)
        for spec in ALL_COLLECTIONS:
            path = self.data_dir / f"{spec.name}.json"
            setattr(self, spec.name, JsonFileCollection(spec, path, clock, timeout))

    async def connect(self) -> None:
        try:
            await asyncio.to_thread(self._initialise_files)
        except OSError as e:
            raise StorageFailure(f"Cannot initialise data directory {self.data_dir}: {e}") from e
        logger.info(f"Using JSON file storage in {self.data_dir}")

    def _initialise_files(self) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        for spec in ALL_COLLECTIONS:
            path = self.data_dir / f"{spec.name}.json"
            if not path.exists():
                path.write_text("[]", encoding="utf-8")
