# backend/msa_inventory/schemas/guest_request_schema.py
from typing import Optional
from pydantic import BaseModel, EmailStr, Field

class GuestRequestCreate(BaseModel):
    team: str = Field(..., min_length=1, description="Team is required")
    name: str = Field(..., min_length=1, description="Your name is required")
    email: EmailStr
    purpose: str = Field(..., min_length=1, description="Purpose is required")
    item_id: Optional[str] = None
    item_name: str = ""
    notes: str = ""
