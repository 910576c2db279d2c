# backend/msa_inventory/schemas/item_schema.py
from typing import Optional, List
from pydantic import BaseModel, Field
from msa_inventory.models.item_model import ItemCondition, ItemLocation, ItemStatus

class ItemCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    category: str = Field(..., min_length=1)
    description: str = ""
    sub_category: str = ""
    team: str = ""
    sku: Optional[str] = None
    barcode: Optional[str] = None
    qr_code: Optional[str] = None
    unit: str = "piece"
    total_quantity: int = Field(..., ge=0)
    # Defaults to total_quantity when omitted
    available_quantity: Optional[int] = Field(None, ge=0)
    condition: ItemCondition = ItemCondition.GOOD
    status: ItemStatus = ItemStatus.ACTIVE
    is_checkoutable: bool = True
    requires_approval: bool = False
    max_checkout_duration: int = Field(7, ge=0)
    location: ItemLocation = Field(default_factory=ItemLocation)
    tags: List[str] = Field(default_factory=list)
    notes: str = ""

class ItemUpdate(BaseModel):
    """Descriptive fields only; quantities change through checkout or adjustment"""
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = None
    category: Optional[str] = Field(None, min_length=1)
    sub_category: Optional[str] = None
    team: Optional[str] = None
    sku: Optional[str] = None
    barcode: Optional[str] = None
    unit: Optional[str] = None
    condition: Optional[ItemCondition] = None
    status: Optional[ItemStatus] = None
    is_checkoutable: Optional[bool] = None
    requires_approval: Optional[bool] = None
    max_checkout_duration: Optional[int] = Field(None, ge=0)
    location: Optional[ItemLocation] = None
    tags: Optional[List[str]] = None
    notes: Optional[str] = None

class QuantityAdjustment(BaseModel):
    adjustment: int = Field(..., description="Signed change applied to total and available")
    reason: str = Field(..., min_length=1)

class ItemSearch(BaseModel):
    search: Optional[str] = None
    category: Optional[str] = None
    status: Optional[ItemStatus] = None
    team: Optional[str] = None
    is_checkoutable: Optional[bool] = None

class LedgerCheck(BaseModel):
    """Result of reconciling an item against its open loans"""
    item_id: str
    total_quantity: int
    available_quantity: int
    on_loan: int
    pending: int
    expected_available: int

    @property
    def consistent(self) -> bool:
        return (
            self.available_quantity == self.expected_available
            and 0 <= self.available_quantity <= self.total_quantity
        )
