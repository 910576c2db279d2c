# backend/msa_inventory/models/base.py
from typing import Any, Dict, Optional, Annotated
from datetime import datetime
from pydantic import BaseModel, ConfigDict, AfterValidator
from msa_inventory.core.clock import ensure_utc

# Every timestamp in the system is stored and compared as aware UTC
UtcDatetime = Annotated[datetime, AfterValidator(ensure_utc)]

GENERATED_FIELDS = {"id", "created_at", "updated_at"}


class StoredModel(BaseModel):
    """Base for entities persisted through the storage contract."""

    model_config = ConfigDict(use_enum_values=False)

    id: Optional[str] = None
    created_at: Optional[UtcDatetime] = None
    updated_at: Optional[UtcDatetime] = None

    def to_document(self) -> Dict[str, Any]:
        """Plain JSON-compatible dict without the storage-generated fields."""
        return self.model_dump(mode="json", exclude=GENERATED_FIELDS)

    @classmethod
    def from_document(cls, document: Optional[Dict[str, Any]]):
        if document is None:
            return None
        return cls.model_validate(document)
