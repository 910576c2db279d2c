# backend/msa_inventory/storage/base.py
"""
Storage backend contract.

Every entity collection exposes the same six coroutines regardless of where
the documents live. Documents are plain JSON-compatible dicts whose identity
is always the string under ``id``; timestamps are ISO-8601 UTC strings.
Backends raise ``StorageFailure`` for any I/O problem and never return
partially applied writes as success. A string value in one of the
collection's ``unique_fields`` that another document already holds is refused
with ``DuplicateValue``; missing and null values may repeat.
"""
import asyncio
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Dict, List, Optional, Tuple, TypeVar

from pydantic_core import to_jsonable_python

from msa_inventory.core.clock import Clock, SystemClock, isoformat
from msa_inventory.core.exceptions import StorageFailure
from msa_inventory.models.guest_request_model import GuestRequest
from msa_inventory.models.item_model import Item
from msa_inventory.models.notification_model import Notification
from msa_inventory.models.transaction_model import Transaction
from msa_inventory.models.user_model import User

T = TypeVar("T")

PROTECTED_FIELDS = ("id", "created_at")


@dataclass(frozen=True)
class CollectionSpec:
    name: str
    unique_fields: Tuple[str, ...] = ()
    filter_fields: Tuple[str, ...] = ()
    search_fields: Tuple[str, ...] = ()

    @classmethod
    def from_model(cls, model) -> "CollectionSpec":
        settings = model.Settings
        return cls(
            name=settings.name,
            unique_fields=tuple(getattr(settings, "unique_fields", ())),
            filter_fields=tuple(getattr(settings, "filter_fields", ())),
            search_fields=tuple(getattr(settings, "search_fields", ())),
        )


USERS = CollectionSpec.from_model(User)
ITEMS = CollectionSpec.from_model(Item)
TRANSACTIONS = CollectionSpec.from_model(Transaction)
NOTIFICATIONS = CollectionSpec.from_model(Notification)
GUEST_REQUESTS = CollectionSpec.from_model(GuestRequest)

ALL_COLLECTIONS = (USERS, ITEMS, TRANSACTIONS, NOTIFICATIONS, GUEST_REQUESTS)


class Collection(ABC):
    def __init__(self, spec: CollectionSpec, clock: Optional[Clock] = None, timeout: float = 10.0):
        self.spec = spec
        self.clock = clock or SystemClock()
        self.timeout = timeout

    @property
    def name(self) -> str:
        return self.spec.name

    @abstractmethod
    async def find_by_id(self, id: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def find_by_field(self, field: str, value: Any) -> Optional[Dict[str, Any]]:
        """First document whose ``field`` equals ``value`` (email, qr_code, barcode...)"""
        ...

    @abstractmethod
    async def find_all(self, filter: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    async def create(self, data: Dict[str, Any]) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def update(self, id: str, partial: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def delete(self, id: str) -> bool:
        ...

    # Shared helpers

    def _now(self) -> str:
        return isoformat(self.clock.now())

    def _new_document(self, data: Dict[str, Any]) -> Dict[str, Any]:
        now = self._now()
        document = {k: v for k, v in to_jsonable_python(data).items() if k not in ("id", "created_at", "updated_at")}
        document["id"] = str(uuid.uuid4())
        document["created_at"] = now
        document["updated_at"] = now
        return document

    def _changes(self, partial: Dict[str, Any]) -> Dict[str, Any]:
        changes = {k: v for k, v in to_jsonable_python(partial).items() if k not in PROTECTED_FIELDS}
        changes["updated_at"] = self._now()
        return changes

    def _split_filter(self, filter: Optional[Dict[str, Any]]) -> Tuple[Dict[str, Any], Optional[str]]:
        """Keep indexed exact-match keys and the ``search`` term; drop everything else."""
        exact: Dict[str, Any] = {}
        search = None
        for key, value in (filter or {}).items():
            if value is None:
                continue
            if key == "search":
                search = str(value).strip().lower() or None
            elif key == "id" or key in self.spec.filter_fields:
                exact[key] = to_jsonable_python(value)
        return exact, search

    def _matches(self, document: Dict[str, Any], exact: Dict[str, Any], search: Optional[str]) -> bool:
        for key, value in exact.items():
            if document.get(key) != value:
                return False
        if search:
            return any(search in str(document.get(f) or "").lower() for f in self.spec.search_fields)
        return True

    async def _bounded(self, awaitable: Awaitable[T], operation: str) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise StorageFailure(
                f"Timed out after {self.timeout}s during {operation} on {self.name}",
                details={"collection": self.name, "operation": operation},
            ) from e


class StorageBackend(ABC):
    """A set of entity collections sharing one persistence mechanism."""

    mode: str = ""

    users: Collection
    items: Collection
    transactions: Collection
    notifications: Collection
    guest_requests: Collection

    def collection(self, name: str) -> Collection:
        for spec in ALL_COLLECTIONS:
            if spec.name == name:
                return getattr(self, name)
        raise KeyError(name)

    async def connect(self) -> None:
        """Prepare the backend; the default has nothing to do."""

    async def close(self) -> None:
        """Release resources; the default has nothing to do."""
