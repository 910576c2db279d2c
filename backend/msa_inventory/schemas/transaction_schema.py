# backend/msa_inventory/schemas/transaction_schema.py
from datetime import datetime
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field, field_validator
from msa_inventory.models.base import UtcDatetime
from msa_inventory.models.transaction_model import Destination, ReturnCondition, Transaction

class CheckoutCreate(BaseModel):
    """Request to borrow units of one item"""
    item_id: str = Field(..., min_length=1, description="Item to borrow")
    user_id: str = Field(..., min_length=1, description="Borrower")
    quantity: int = Field(..., ge=1, description="Units requested")
    purpose: str = Field(..., min_length=1, description="Why the item is needed")
    expected_return_date: UtcDatetime = Field(..., description="When the item will come back")
    destination: Destination = Field(default_factory=Destination)
    notes: Optional[str] = Field(None, max_length=2000)

    @field_validator("purpose")
    @classmethod
    def purpose_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Purpose is required")
        return v

class CheckoutLine(BaseModel):
    item_id: str = Field(..., min_length=1)
    quantity: int = Field(..., ge=1)

class BulkCheckoutCreate(BaseModel):
    """Several items borrowed for the same purpose and return date"""
    user_id: str = Field(..., min_length=1)
    lines: List[CheckoutLine] = Field(..., min_length=1, description="Select at least one item")
    purpose: str = Field(..., min_length=1)
    expected_return_date: UtcDatetime
    destination: Destination = Field(default_factory=Destination)
    notes: Optional[str] = Field(None, max_length=2000)

    @field_validator("purpose")
    @classmethod
    def purpose_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Purpose is required")
        return v

class ReturnCreate(BaseModel):
    condition: Optional[ReturnCondition] = None
    notes: Optional[str] = Field(None, max_length=2000)

class ExtensionCreate(BaseModel):
    new_return_date: UtcDatetime
    reason: str = Field(..., min_length=1)

    @field_validator("reason")
    @classmethod
    def reason_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Reason is required")
        return v

class BulkApproveResult(BaseModel):
    approved: List[Transaction] = Field(default_factory=list)
    errors: List[Dict[str, Any]] = Field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors

    @property
    def message(self) -> str:
        if self.errors:
            return f"Approved {len(self.approved)} request(s), {len(self.errors)} failed"
        return f"Approved {len(self.approved)} request(s)"

class TransactionSearch(BaseModel):
    item_id: Optional[str] = None
    user_id: Optional[str] = None
    status: Optional[str] = None
    type: Optional[str] = None
    search: Optional[str] = None
