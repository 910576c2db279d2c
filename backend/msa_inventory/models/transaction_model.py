# backend/msa_inventory/models/transaction_model.py
from typing import Optional, List, Dict, Any
from datetime import datetime
from pydantic import BaseModel, Field
from enum import Enum
from msa_inventory.core.clock import ensure_utc
from msa_inventory.models.base import StoredModel, UtcDatetime

class TransactionType(str, Enum):
    CHECKOUT = "checkout"          # User borrows units of an item
    RETURN = "return"
    RESERVE = "reserve"
    CANCEL = "cancel"
    MAINTENANCE = "maintenance"
    ADJUSTMENT = "adjustment"      # Audit entry for a manual quantity change

class TransactionStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    OVERDUE = "overdue"
    RETURNED = "returned"
    CANCELLED = "cancelled"
    APPROVED = "approved"          # Only used by adjustment audit entries
    REJECTED = "rejected"

# Legal lifecycle edges; anything else is a state conflict
TRANSITIONS: Dict[TransactionStatus, frozenset] = {
    TransactionStatus.PENDING: frozenset({
        TransactionStatus.ACTIVE,
        TransactionStatus.REJECTED,
        TransactionStatus.CANCELLED,
    }),
    TransactionStatus.ACTIVE: frozenset({TransactionStatus.OVERDUE, TransactionStatus.RETURNED}),
    TransactionStatus.OVERDUE: frozenset({TransactionStatus.RETURNED}),
}

TERMINAL_STATUSES = frozenset({
    TransactionStatus.RETURNED,
    TransactionStatus.REJECTED,
    TransactionStatus.CANCELLED,
})

# Statuses whose quantity is claimed against the item
RESERVING_STATUSES = frozenset({
    TransactionStatus.PENDING,
    TransactionStatus.ACTIVE,
    TransactionStatus.OVERDUE,
})

# Statuses whose quantity has been deducted from available_quantity
ON_LOAN_STATUSES = frozenset({TransactionStatus.ACTIVE, TransactionStatus.OVERDUE})

class ExtensionStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"

class PenaltyType(str, Enum):
    LATE_FEE = "late_fee"
    DAMAGE_FEE = "damage_fee"
    LOST_ITEM = "lost_item"
    OTHER = "other"

class ReturnCondition(str, Enum):
    NEW = "new"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"
    DAMAGED = "damaged"

class Destination(BaseModel):
    building: str = ""
    room: str = ""
    location: str = ""

class Extension(BaseModel):
    requested_by: str
    requested_date: UtcDatetime
    new_return_date: UtcDatetime
    reason: str = Field(..., min_length=1)
    status: ExtensionStatus = Field(default=ExtensionStatus.PENDING)
    approved_by: Optional[str] = None
    approved_date: Optional[UtcDatetime] = None
    notes: str = ""

class Penalty(BaseModel):
    type: PenaltyType
    amount: float = Field(..., ge=0)
    currency: str = "USD"
    reason: str
    is_paid: bool = False
    paid_date: Optional[UtcDatetime] = None
    issued_date: UtcDatetime
    issued_by: Optional[str] = None

class StorageVisit(BaseModel):
    visit_date: UtcDatetime
    visit_type: str = "pickup"
    user_id: str
    photo_urls: List[str] = Field(default_factory=list)
    location: str = ""
    notes: str = ""

class Transaction(StoredModel):
    transaction_number: Optional[str] = None

    type: TransactionType = Field(default=TransactionType.CHECKOUT)
    status: TransactionStatus = Field(default=TransactionStatus.PENDING)

    # References
    item_id: str = Field(..., description="Item being lent")
    user_id: str = Field(..., description="Borrower")
    quantity: int = Field(1, ge=1)

    # Important dates
    checkout_date: UtcDatetime
    expected_return_date: UtcDatetime
    actual_return_date: Optional[UtcDatetime] = None

    purpose: str = Field(..., min_length=1)
    destination: Destination = Field(default_factory=Destination)
    checkout_condition: Optional[str] = None
    return_condition: Optional[ReturnCondition] = None
    notes: str = ""
    return_notes: str = ""

    # Approval trail
    approval_required: bool = True
    approved_by: Optional[str] = None
    approved_date: Optional[UtcDatetime] = None
    rejected_by: Optional[str] = None
    rejected_date: Optional[UtcDatetime] = None
    rejection_reason: str = ""
    cancelled_by: Optional[str] = None
    cancelled_date: Optional[UtcDatetime] = None
    cancellation_reason: str = ""

    extensions: List[Extension] = Field(default_factory=list)
    penalties: List[Penalty] = Field(default_factory=list)

    # Return gate
    requires_storage_photo: bool = False
    storage_photo_uploaded: bool = False
    storage_visits: List[StorageVisit] = Field(default_factory=list)

    # Overdue and reminder bookkeeping
    is_overdue: bool = False
    overdue_notification_sent: bool = False
    reminders_sent: int = 0
    last_reminder_date: Optional[UtcDatetime] = None

    checked_out_by: Optional[str] = None
    returned_by: Optional[str] = None

    def __repr__(self) -> str:
        return f"<Transaction {self.transaction_number} {self.type.value} - {self.status.value}>"

    def __str__(self) -> str:
        return f"{self.transaction_number} ({self.status.value})"

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_on_loan(self) -> bool:
        return self.status in ON_LOAN_STATUSES

    def can_transition_to(self, status: TransactionStatus) -> bool:
        return status in TRANSITIONS.get(self.status, frozenset())

    def is_past_due(self, now: datetime) -> bool:
        return self.status == TransactionStatus.ACTIVE and self.expected_return_date < ensure_utc(now)

    @property
    def outstanding_penalties(self) -> float:
        return sum(p.amount for p in self.penalties if not p.is_paid)

    class Settings:
        name = "transactions"
        unique_fields = ("transaction_number",)
        filter_fields = ("item_id", "user_id", "status", "type")
        search_fields = ("transaction_number", "purpose")


class TransactionDetail(BaseModel):
    """A transaction joined with its item and a borrower summary"""
    transaction: Transaction
    item: Optional[Dict[str, Any]] = None
    user: Optional[Dict[str, Any]] = None
