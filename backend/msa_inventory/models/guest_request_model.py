# backend/msa_inventory/models/guest_request_model.py
from typing import Optional
from pydantic import BaseModel, Field, EmailStr
from enum import Enum
from msa_inventory.models.base import StoredModel, UtcDatetime

class GuestRequestStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"

class GuestRequester(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr

class GuestRequest(StoredModel):
    """Checkout request submitted by someone without an account"""
    team: str = Field(..., min_length=1)
    item_id: Optional[str] = None
    item_name: str = ""
    requester: GuestRequester
    purpose: str = Field(..., min_length=1)
    notes: str = ""
    status: GuestRequestStatus = Field(default=GuestRequestStatus.PENDING)
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[UtcDatetime] = None
    rejection_reason: str = ""

    class Settings:
        name = "guest_requests"
        unique_fields = ()
        filter_fields = ("team", "status", "item_id")
        search_fields = ("item_name", "purpose")
