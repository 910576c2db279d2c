# backend/msa_inventory/models/user_model.py
from pydantic import BaseModel, Field, EmailStr, model_validator
from enum import Enum
from msa_inventory.models.base import StoredModel

class UserRole(str, Enum):
    ADMIN = "admin"
    MANAGER = "manager"
    USER = "user"

class UserStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"

class Permissions(BaseModel):
    can_checkout: bool = True
    can_return: bool = True
    can_approve: bool = False
    can_manage_items: bool = False
    can_manage_users: bool = False
    can_view_analytics: bool = False
    can_bulk_import: bool = False

    @classmethod
    def for_role(cls, role: "UserRole") -> "Permissions":
        if role == UserRole.ADMIN:
            return cls(
                can_approve=True,
                can_manage_items=True,
                can_manage_users=True,
                can_view_analytics=True,
                can_bulk_import=True,
            )
        if role == UserRole.MANAGER:
            return cls(
                can_approve=True,
                can_manage_items=True,
                can_view_analytics=True,
                can_bulk_import=True,
            )
        return cls()

class User(StoredModel):
    name: str = Field(..., min_length=1, max_length=100)
    email: EmailStr
    role: UserRole = Field(default=UserRole.USER)
    team: str = ""
    status: UserStatus = Field(default=UserStatus.ACTIVE)
    permissions: Permissions = Field(default_factory=Permissions)

    @model_validator(mode="before")
    @classmethod
    def default_permissions(cls, data):
        # Role decides permissions unless they were stored explicitly
        if isinstance(data, dict) and not data.get("permissions"):
            role = UserRole(data.get("role") or UserRole.USER)
            data = {**data, "permissions": Permissions.for_role(role).model_dump()}
        return data

    def __repr__(self) -> str:
        return f"<User {self.email} - {self.role.value}>"

    def __str__(self) -> str:
        return self.name

    @property
    def is_active(self) -> bool:
        return self.status == UserStatus.ACTIVE

    @property
    def can_approve(self) -> bool:
        return self.is_active and self.permissions.can_approve

    @property
    def summary(self) -> dict:
        """Public subset embedded into joined transaction views"""
        return {"id": self.id, "name": self.name, "email": self.email, "team": self.team}

    class Settings:
        name = "users"
        unique_fields = ("email",)
        filter_fields = ("role", "status", "team", "email")
        search_fields = ("name", "email")
