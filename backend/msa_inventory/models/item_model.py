# backend/msa_inventory/models/item_model.py
from typing import Optional, List
from pydantic import BaseModel, Field, model_validator
from enum import Enum
from msa_inventory.models.base import StoredModel

class ItemStatus(str, Enum):
    ACTIVE = "active"              # In circulation
    INACTIVE = "inactive"
    MAINTENANCE = "maintenance"    # Out for repair
    RETIRED = "retired"
    LOST = "lost"

class ItemCondition(str, Enum):
    NEW = "new"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"
    DAMAGED = "damaged"
    NEEDS_MAINTENANCE = "needs_maintenance"

class ItemLocation(BaseModel):
    building: str = ""
    room: str = ""
    shelf: str = ""
    bin: str = ""

class Item(StoredModel):
    # Basic item information
    name: str = Field(..., min_length=1, max_length=200, description="Item name")
    description: str = Field("", description="Free text description")
    category: str = Field(..., min_length=1, description="Inventory category")
    sub_category: str = ""
    team: str = Field("", description="Owning team, empty for shared items")
    sku: Optional[str] = None
    barcode: Optional[str] = None
    qr_code: Optional[str] = None
    unit: str = "piece"

    # Quantity bookkeeping
    total_quantity: int = Field(0, ge=0, description="Units owned")
    available_quantity: int = Field(0, ge=0, description="Units on the shelf right now")

    # Status and policy
    condition: ItemCondition = Field(default=ItemCondition.GOOD)
    status: ItemStatus = Field(default=ItemStatus.ACTIVE)
    is_checkoutable: bool = True
    # Kept for compatibility: every checkout currently requires approval
    requires_approval: bool = False
    max_checkout_duration: int = Field(7, ge=0, description="Maximum loan length in days")

    location: ItemLocation = Field(default_factory=ItemLocation)
    tags: List[str] = Field(default_factory=list)
    notes: str = ""

    created_by: Optional[str] = None
    last_modified_by: Optional[str] = None

    @model_validator(mode="after")
    def check_quantities(self):
        if self.available_quantity > self.total_quantity:
            raise ValueError("available_quantity cannot exceed total_quantity")
        return self

    def __repr__(self) -> str:
        return f"<Item {self.name[:30]} - {self.available_quantity}/{self.total_quantity}>"

    def __str__(self) -> str:
        return self.name

    @property
    def checked_out_quantity(self) -> int:
        return self.total_quantity - self.available_quantity

    def is_available(self, quantity: int = 1) -> bool:
        """Check that the item can be lent out in the requested amount"""
        return (
            self.available_quantity >= quantity
            and self.status == ItemStatus.ACTIVE
            and self.is_checkoutable
        )

    class Settings:
        name = "items"
        unique_fields = ("sku", "barcode", "qr_code")
        filter_fields = ("category", "status", "team", "is_checkoutable")
        search_fields = ("name", "description", "sku")
