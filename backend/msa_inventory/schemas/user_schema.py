# backend/msa_inventory/schemas/user_schema.py
from pydantic import BaseModel, EmailStr, Field
from typing import Optional
from msa_inventory.models.user_model import Permissions, UserRole, UserStatus

class UserCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    email: EmailStr = Field(..., description="User's email address")
    role: UserRole = UserRole.USER
    team: str = ""
    permissions: Optional[Permissions] = None

class UserUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    team: Optional[str] = None
    status: Optional[UserStatus] = None
    role: Optional[UserRole] = None
    permissions: Optional[Permissions] = None
