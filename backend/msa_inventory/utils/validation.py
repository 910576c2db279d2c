# backend/msa_inventory/utils/validation.py
from typing import Type, TypeVar
from pydantic import BaseModel, ValidationError as PydanticValidationError
from msa_inventory.core.exceptions import ValidationError

M = TypeVar("M", bound=BaseModel)


def parse_request(schema: Type[M], **data) -> M:
    """Build a request schema, turning pydantic errors into the engine's ValidationError"""
    try:
        return schema(**data)
    except PydanticValidationError as e:
        errors = [
            {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
            for err in e.errors()
        ]
        summary = "; ".join(f"{err['field']}: {err['message']}" for err in errors)
        raise ValidationError(f"Invalid request - {summary}", {"errors": errors}) from e
