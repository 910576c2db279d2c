# backend/msa_inventory/core/exceptions.py
"""
Typed errors raised by the inventory engine.

Every error carries a machine-readable ``code``, a human-readable ``message``
and optional structured ``details`` so the HTTP layer can map them to
responses without parsing message text.

    InventoryError
    +-- NotFound             entity id does not resolve
    +-- ValidationError      business precondition violated
    |   +-- DuplicateValue   unique field already taken
    +-- PermissionDenied     actor lacks the required capability
    +-- StateConflict        transition not legal from current status
    +-- ConcurrencyConflict  lost a race on a reservation, safe to retry
    +-- StorageFailure       persistence I/O error or timeout
"""
from typing import Any, Dict, Optional


class InventoryError(Exception):
    code: str = "INVENTORY_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class NotFound(InventoryError):
    code = "NOT_FOUND"

    def __init__(self, entity: str, entity_id: Any):
        super().__init__(f"{entity} not found", {"entity": entity, "id": str(entity_id)})
        self.entity = entity
        self.entity_id = entity_id


class ValidationError(InventoryError):
    code = "VALIDATION_ERROR"


class InsufficientAvailability(ValidationError):
    code = "INSUFFICIENT_AVAILABILITY"

    def __init__(self, message: str, available: int, requested: int):
        super().__init__(message, {"available": available, "requested": requested})
        self.available = available
        self.requested = requested


class DuplicateValue(ValidationError):
    code = "DUPLICATE_VALUE"

    def __init__(self, collection: str, field: str, value: Any):
        super().__init__(
            f"A document in {collection} with {field} {value} already exists",
            {"collection": collection, "field": field, "value": value},
        )
        self.field = field
        self.value = value


class PermissionDenied(InventoryError):
    code = "PERMISSION_DENIED"


class StateConflict(InventoryError):
    code = "STATE_CONFLICT"

    def __init__(self, message: str, current_status: Optional[str] = None):
        details = {"current_status": current_status} if current_status else None
        super().__init__(message, details)
        self.current_status = current_status


class ConcurrencyConflict(InventoryError):
    code = "CONCURRENCY_CONFLICT"


class StorageFailure(InventoryError):
    code = "STORAGE_FAILURE"

    def __init__(self, message: str, fatal: bool = False, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        # fatal: the system may be inconsistent and needs operator intervention
        self.fatal = fatal
        if fatal:
            self.details["fatal"] = True
