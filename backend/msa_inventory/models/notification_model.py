# backend/msa_inventory/models/notification_model.py
from typing import Optional, Dict, Any
from pydantic import BaseModel, Field
from enum import Enum
from msa_inventory.models.base import StoredModel, UtcDatetime

class NotificationType(str, Enum):
    CHECKOUT_CONFIRMATION = "checkout_confirmation"
    RETURN_REMINDER = "return_reminder"
    OVERDUE_ALERT = "overdue_alert"
    APPROVAL_REQUEST = "approval_request"
    APPROVAL_APPROVED = "approval_approved"
    APPROVAL_REJECTED = "approval_rejected"
    EXTENSION_REQUEST = "extension_request"
    EXTENSION_APPROVED = "extension_approved"
    EXTENSION_REJECTED = "extension_rejected"
    PENALTY_ISSUED = "penalty_issued"
    ITEM_DUE_SOON = "item_due_soon"
    RETURN_CONFIRMED = "return_confirmed"
    MAINTENANCE_SCHEDULED = "maintenance_scheduled"
    SYSTEM_ALERT = "system_alert"
    OTHER = "other"

class NotificationPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"

class NotificationStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    READ = "read"

class NotificationChannels(BaseModel):
    email: bool = False
    sms: bool = False
    push: bool = False
    in_app: bool = True

class Notification(StoredModel):
    recipient: str
    type: NotificationType
    title: str = Field(..., min_length=1)
    message: str
    priority: NotificationPriority = Field(default=NotificationPriority.MEDIUM)
    channels: NotificationChannels = Field(default_factory=NotificationChannels)
    status: NotificationStatus = Field(default=NotificationStatus.PENDING)
    is_read: bool = False
    read_at: Optional[UtcDatetime] = None
    sent_at: Optional[UtcDatetime] = None

    related_transaction: Optional[str] = None
    related_item: Optional[str] = None
    action_url: str = ""
    action_text: str = ""
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def __repr__(self) -> str:
        return f"<Notification {self.type.value} -> {self.recipient}>"

    class Settings:
        name = "notifications"
        unique_fields = ()
        filter_fields = ("recipient", "status", "type", "is_read", "related_transaction")
        search_fields = ("title", "message")
