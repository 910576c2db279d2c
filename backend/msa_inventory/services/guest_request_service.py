# backend/msa_inventory/services/guest_request_service.py
from typing import Optional, List
import logging

from msa_inventory.core.clock import Clock, SystemClock
from msa_inventory.core.exceptions import NotFound, StateConflict, StorageFailure, ValidationError
from msa_inventory.models.guest_request_model import GuestRequest, GuestRequester, GuestRequestStatus
from msa_inventory.models.notification_model import NotificationType
from msa_inventory.schemas.guest_request_schema import GuestRequestCreate
from msa_inventory.services.notification_service import NotificationDispatcher
from msa_inventory.services.user_service import UserService
from msa_inventory.storage.base import StorageBackend
from msa_inventory.utils.locks import KeyedLock
from msa_inventory.utils.validation import parse_request

logger = logging.getLogger(__name__)

class GuestRequestService:
    """Requests from people without an account, reviewed by approvers"""

    def __init__(self, storage: StorageBackend, users: UserService,
                 notifications: NotificationDispatcher, clock: Optional[Clock] = None,
                 review_locks: Optional[KeyedLock] = None):
        self.storage = storage
        self.users = users
        self.notifications = notifications
        self.clock = clock or SystemClock()
        self.review_locks = review_locks or KeyedLock()

    async def submit(self, **fields) -> GuestRequest:
        request = parse_request(GuestRequestCreate, **fields)
        if request.item_id and not await self.storage.items.find_by_id(request.item_id):
            raise NotFound("Item", request.item_id)

        guest_request = GuestRequest(
            team=request.team.strip(),
            item_id=request.item_id,
            item_name=request.item_name,
            requester=GuestRequester(name=request.name, email=request.email),
            purpose=request.purpose,
            notes=request.notes,
        )
        document = await self.storage.guest_requests.create(guest_request.to_document())
        saved = GuestRequest.from_document(document)
        logger.info(f"Guest request {saved.id} submitted by {request.email} for team {saved.team}")

        self.notifications.notify_approvers(
            NotificationType.APPROVAL_REQUEST,
            "Guest Request",
            f"{request.name} ({saved.team}) requested {saved.item_name or 'equipment'}: {saved.purpose}",
            related_item_id=saved.item_id,
            action_url="/admin/guest-requests",
            action_text="Review Request",
        )
        return saved

    async def get_request(self, request_id: str) -> GuestRequest:
        guest_request = GuestRequest.from_document(await self.storage.guest_requests.find_by_id(request_id))
        if not guest_request:
            raise NotFound("Guest request", request_id)
        return guest_request

    async def list_for_team(self, team: Optional[str] = None) -> List[GuestRequest]:
        """Requests for one team, or all of them when no team is given"""
        documents = await self.storage.guest_requests.find_all({"team": (team or "").strip() or None})
        return [GuestRequest.from_document(d) for d in documents]

    async def _review(self, request_id: str, reviewer_id: str, status: GuestRequestStatus,
                      rejection_reason: str = "") -> GuestRequest:
        reviewer = await self.users.require_permission(reviewer_id, "can_approve")
        async with self.review_locks.hold(request_id):
            guest_request = await self.get_request(request_id)
            if guest_request.status != GuestRequestStatus.PENDING:
                raise StateConflict(
                    f"Guest request has already been {guest_request.status.value}",
                    current_status=guest_request.status.value,
                )

            document = await self.storage.guest_requests.update(request_id, {
                "status": status,
                "reviewed_by": reviewer.id,
                "reviewed_at": self.clock.now(),
                "rejection_reason": rejection_reason,
            })
        if document is None:
            raise StorageFailure("Failed to update guest request", details={"request_id": request_id})
        logger.info(f"Guest request {request_id} {status.value} by {reviewer.name}")
        return GuestRequest.from_document(document)

    async def approve(self, request_id: str, reviewer_id: str) -> GuestRequest:
        return await self._review(request_id, reviewer_id, GuestRequestStatus.APPROVED)

    async def reject(self, request_id: str, reviewer_id: str, reason: str) -> GuestRequest:
        if not reason or not reason.strip():
            raise ValidationError("Rejection reason is required")
        return await self._review(request_id, reviewer_id, GuestRequestStatus.REJECTED, reason.strip())
