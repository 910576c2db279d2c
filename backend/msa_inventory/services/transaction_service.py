# backend/msa_inventory/services/transaction_service.py
from typing import Optional, List, Dict, Any, Iterable
from datetime import datetime
from contextlib import asynccontextmanager, AsyncExitStack
import logging

from msa_inventory.core.clock import Clock, SystemClock
from msa_inventory.core.config import Settings, settings as default_settings
from msa_inventory.core.exceptions import (
    InsufficientAvailability, InventoryError, NotFound, PermissionDenied, StateConflict, StorageFailure,
    ValidationError
)
from msa_inventory.models.item_model import Item, ItemStatus
from msa_inventory.models.notification_model import NotificationPriority, NotificationType
from msa_inventory.models.transaction_model import (
    Extension, Transaction, TransactionDetail, TransactionStatus, TransactionType, StorageVisit,
    ReturnCondition
)
from msa_inventory.models.user_model import User
from msa_inventory.schemas.transaction_schema import (
    BulkApproveResult, BulkCheckoutCreate, CheckoutCreate, ExtensionCreate, ReturnCreate, TransactionSearch
)
from msa_inventory.services.item_service import ItemService
from msa_inventory.services.notification_service import NotificationDispatcher
from msa_inventory.services.penalty_service import calculate_late_fee
from msa_inventory.services.user_service import UserService
from msa_inventory.storage.base import StorageBackend
from msa_inventory.utils.locks import KeyedLock
from msa_inventory.utils.transaction_number import create_numbered, generate_transaction_number
from msa_inventory.utils.validation import parse_request

logger = logging.getLogger(__name__)

class TransactionService:
    """
    Loan lifecycle: checkout -> approve/reject/cancel -> return, plus
    extension requests and storage-photo evidence.

    Every read-check-write sequence touching an item's stock or one of its
    transactions runs under that item's lock. Stock is only deducted at
    approval; pending requests merely reduce the effective availability seen
    by later checkouts.
    """

    def __init__(self, storage: StorageBackend, users: UserService, items: ItemService,
                 notifications: NotificationDispatcher, settings: Optional[Settings] = None,
                 clock: Optional[Clock] = None, item_locks: Optional[KeyedLock] = None):
        self.storage = storage
        self.users = users
        self.items = items
        self.notifications = notifications
        self.settings = settings or default_settings
        self.clock = clock or SystemClock()
        self.item_locks = item_locks or items.item_locks

    @staticmethod
    def generate_transaction_number(now: datetime) -> str:
        """Generate a transaction number like TXN-20240101-0042"""
        return generate_transaction_number(now)

    # Reads

    async def get_transaction_by_id(self, transaction_id: str) -> Optional[Transaction]:
        return Transaction.from_document(await self.storage.transactions.find_by_id(transaction_id))

    async def require_transaction(self, transaction_id: str) -> Transaction:
        transaction = await self.get_transaction_by_id(transaction_id)
        if not transaction:
            raise NotFound("Transaction", transaction_id)
        return transaction

    async def get_transaction_detail(self, transaction_id: str) -> TransactionDetail:
        """Transaction joined with its item and a borrower summary"""
        transaction = await self.require_transaction(transaction_id)
        item = await self.storage.items.find_by_id(transaction.item_id)
        user = await self.users.get_user_by_id(transaction.user_id)
        return TransactionDetail(
            transaction=transaction,
            item=item,
            user=user.summary if user else None,
        )

    async def list_transactions(self, **filters) -> List[Transaction]:
        search_params = parse_request(TransactionSearch, **filters)
        documents = await self.storage.transactions.find_all(search_params.model_dump(exclude_none=True))
        return [Transaction.from_document(d) for d in documents]

    async def pending_quantity(self, item_id: str) -> int:
        documents = await self.storage.transactions.find_all({
            "item_id": item_id,
            "status": TransactionStatus.PENDING,
        })
        return sum(d.get("quantity") or 0 for d in documents)

    async def effective_available(self, item: Item) -> int:
        """Available stock minus what other pending requests already claim"""
        return max(0, item.available_quantity - await self.pending_quantity(item.id))

    # Locking helpers

    @asynccontextmanager
    async def _locked_transaction(self, transaction_id: str):
        """Hold the owning item's lock and yield a fresh copy of the transaction"""
        transaction = await self.require_transaction(transaction_id)
        async with self.item_locks.hold(transaction.item_id):
            yield await self.require_transaction(transaction_id)

    @staticmethod
    def _ensure_transition(transaction: Transaction, target: TransactionStatus, message: str) -> None:
        if not transaction.can_transition_to(target):
            raise StateConflict(message, current_status=transaction.status.value)

    async def _roll_back(self, transaction_id: str, restore: Dict[str, Any], cause: Exception, step: str):
        """Put the transaction back after a write in ``step`` failed or its outcome is unknown"""
        logger.error(f"Storage write failed during {step} of {transaction_id}, rolling back: {str(cause)}")
        try:
            restored = await self.storage.transactions.update(transaction_id, restore)
        except Exception as rollback_error:
            restored = None
            logger.critical(f"Rollback of {transaction_id} failed: {str(rollback_error)}")
        if restored is None:
            raise StorageFailure(
                f"Transaction {transaction_id} is inconsistent after a failed {step}; manual intervention required",
                fatal=True,
                details={"transaction_id": transaction_id, "step": step},
            ) from cause
        raise StorageFailure(
            f"Failed to record the {step}; the transaction was left unchanged",
            details={"transaction_id": transaction_id, "step": step},
        ) from cause

    # Checkout

    async def _validate_checkout_line(self, item_id: str, quantity: int) -> Item:
        item = await self.items.require_item(item_id)
        if item.status != ItemStatus.ACTIVE or not item.is_checkoutable:
            raise ValidationError(
                f"{item.name} is not available for checkout",
                {"item_id": item_id, "status": item.status.value, "is_checkoutable": item.is_checkoutable},
            )
        effective = await self.effective_available(item)
        if effective < quantity:
            raise InsufficientAvailability(
                f"Only {effective} unit(s) of {item.name} available after pending reservations",
                available=effective,
                requested=quantity,
            )
        return item

    def _new_checkout(self, item: Item, user_id: str, quantity: int, request, now: datetime,
                      number: str, notes: str) -> Transaction:
        # Every checkout waits for approval, whatever the item's requires_approval flag says
        return Transaction(
            transaction_number=number,
            type=TransactionType.CHECKOUT,
            status=TransactionStatus.PENDING,
            item_id=item.id,
            user_id=user_id,
            quantity=quantity,
            checkout_date=now,
            expected_return_date=request.expected_return_date,
            purpose=request.purpose,
            destination=request.destination,
            checkout_condition=item.condition.value,
            notes=notes,
            approval_required=True,
            requires_storage_photo=self.settings.REQUIRE_STORAGE_PHOTO,
            checked_out_by=user_id,
        )

    async def checkout(self, item_id: str, user_id: str, quantity: int, purpose: str,
                       expected_return_date: datetime, destination: Optional[Dict[str, str]] = None,
                       notes: Optional[str] = None) -> Transaction:
        """Create a pending checkout request"""
        request = parse_request(
            CheckoutCreate,
            item_id=item_id,
            user_id=user_id,
            quantity=quantity,
            purpose=purpose,
            expected_return_date=expected_return_date,
            destination=destination or {},
            notes=notes,
        )
        user = await self.users.require_permission(request.user_id, "can_checkout")

        try:
            async with self.item_locks.hold(request.item_id):
                item = await self._validate_checkout_line(request.item_id, request.quantity)
                now = self.clock.now()
                document = await create_numbered(
                    self.storage.transactions,
                    lambda number: self._new_checkout(
                        item, user.id, request.quantity, request, now, number, request.notes or ""
                    ).to_document(),
                    now,
                )
        except InventoryError as e:
            logger.info(f"Checkout of {request.item_id} by {user_id} refused: {e.message}")
            raise

        transaction = Transaction.from_document(document)
        logger.info(f"Created checkout request {transaction.transaction_number}: {quantity} x {item.name} for {user.name}")

        self.notifications.notify_approvers(
            NotificationType.APPROVAL_REQUEST,
            "Checkout Approval Required",
            f"{user.name} requested to checkout {transaction.quantity} unit(s) of {item.name}",
            related_transaction_id=transaction.id,
            related_item_id=item.id,
            action_url="/admin",
            action_text="Review in Admin Panel",
        )
        self.notifications.notify(
            user.id,
            NotificationType.APPROVAL_REQUEST,
            "Checkout Pending Approval",
            f"Your checkout request for {item.name} is pending admin approval",
            related_transaction_id=transaction.id,
            related_item_id=item.id,
            action_url=f"/transactions/{transaction.id}",
            action_text="View Request",
        )
        return transaction

    async def bulk_checkout(self, user_id: str, lines: List[Dict[str, Any]], purpose: str,
                            expected_return_date: datetime, destination: Optional[Dict[str, str]] = None,
                            notes: Optional[str] = None) -> List[Transaction]:
        """Several checkout requests that are accepted or refused together"""
        request = parse_request(
            BulkCheckoutCreate,
            user_id=user_id,
            lines=lines,
            purpose=purpose,
            expected_return_date=expected_return_date,
            destination=destination or {},
            notes=notes,
        )
        user = await self.users.require_permission(request.user_id, "can_checkout")

        errors: List[str] = []
        seen = set()
        for line in request.lines:
            if line.item_id in seen:
                errors.append(
                    f"Duplicate selection detected for item {line.item_id}. "
                    "Please adjust quantities instead of selecting twice."
                )
            seen.add(line.item_id)
        if errors:
            raise ValidationError("Some items could not be processed", {"errors": errors})

        created: List[Transaction] = []
        async with AsyncExitStack() as stack:
            # Sorted acquisition so overlapping batches cannot deadlock
            for item_id in sorted(seen):
                await stack.enter_async_context(self.item_locks.hold(item_id))

            validated = []
            for line in request.lines:
                try:
                    validated.append((await self._validate_checkout_line(line.item_id, line.quantity), line.quantity))
                except (NotFound, ValidationError) as e:
                    errors.append(e.message)
            if errors:
                raise ValidationError("Some items could not be processed", {"errors": errors})

            now = self.clock.now()
            for item, quantity in validated:
                line_notes = "\n".join(filter(None, [
                    "Bulk checkout request",
                    f"Checked out by: {user.name}",
                    f"Item: {item.name}",
                    f"Quantity: {quantity}",
                    f"Additional notes: {request.notes}" if request.notes else "",
                ]))
                document = await create_numbered(
                    self.storage.transactions,
                    lambda number: self._new_checkout(
                        item, user.id, quantity, request, now, number, line_notes
                    ).to_document(),
                    now,
                )
                created.append(Transaction.from_document(document))

        logger.info(f"Created {len(created)} bulk checkout request(s) for {user.name}")
        description = ", ".join(f"{q} x {item.name}" for item, q in validated)
        self.notifications.notify_approvers(
            NotificationType.APPROVAL_REQUEST,
            "Bulk Checkout Approval Required",
            f"{user.name} requested multiple items: {description}",
            related_transaction_id=created[0].id,
            action_url="/admin",
            action_text="Review in Admin Panel",
        )
        self.notifications.notify(
            user.id,
            NotificationType.APPROVAL_REQUEST,
            "Bulk Checkout Pending Approval",
            f"Your bulk checkout request for {len(created)} item(s) is pending admin approval",
            related_transaction_id=created[0].id,
            action_url="/transactions",
            action_text="View Requests",
        )
        return created

    # Approval workflow

    async def approve(self, transaction_id: str, approver_id: str) -> Transaction:
        """pending -> active, deducting the stock"""
        approver = await self.users.require_permission(approver_id, "can_approve")

        async with self._locked_transaction(transaction_id) as transaction:
            self._ensure_transition(
                transaction, TransactionStatus.ACTIVE, "Only pending transactions can be approved"
            )
            item = await self.items.require_item(transaction.item_id)
            if item.available_quantity < transaction.quantity:
                raise InsufficientAvailability(
                    f"Only {item.available_quantity} units available. Cannot approve.",
                    available=item.available_quantity,
                    requested=transaction.quantity,
                )

            now = self.clock.now()
            restore = {
                "status": TransactionStatus.PENDING,
                "approved_by": None,
                "approved_date": None,
            }
            try:
                updated = await self.storage.transactions.update(transaction_id, {
                    "status": TransactionStatus.ACTIVE,
                    "approved_by": approver.id,
                    "approved_date": now,
                })
            except Exception as e:
                # the write may still have landed
                await self._roll_back(transaction_id, restore, e, "approval")
            if not updated or updated.get("status") != TransactionStatus.ACTIVE.value:
                raise StorageFailure("Failed to update transaction status", details={"transaction_id": transaction_id})

            try:
                item_document = await self.storage.items.update(item.id, {
                    "available_quantity": item.available_quantity - transaction.quantity,
                })
                if item_document is None:
                    raise StorageFailure(f"Item {item.id} disappeared during approval")
            except Exception as e:
                await self._roll_back(transaction_id, restore, e, "approval")

        approved = Transaction.from_document(updated)
        logger.info(
            f"Approved {approved.transaction_number} by {approver.name}: "
            f"{item.name} available {item.available_quantity} -> {item.available_quantity - approved.quantity}"
        )

        message = f"Your checkout request has been approved by {approver.name}."
        if approved.requires_storage_photo:
            message += " IMPORTANT: You MUST upload storage visit photos before closing this transaction."
        self.notifications.notify(
            approved.user_id,
            NotificationType.APPROVAL_APPROVED,
            "Checkout Approved",
            message,
            related_transaction_id=approved.id,
            related_item_id=approved.item_id,
            priority=NotificationPriority.HIGH,
            action_url=f"/transactions/{approved.id}",
            action_text="View Transaction",
        )
        return approved

    async def bulk_approve(self, transaction_ids: List[str], approver_id: str) -> BulkApproveResult:
        result = BulkApproveResult()
        for transaction_id in dict.fromkeys(transaction_ids):
            try:
                result.approved.append(await self.approve(transaction_id, approver_id))
            except InventoryError as e:
                result.errors.append({"id": transaction_id, "code": e.code, "message": e.message})
        logger.info(result.message)
        return result

    async def reject(self, transaction_id: str, approver_id: str, reason: str) -> Transaction:
        """pending -> rejected; nothing was deducted so stock is untouched"""
        if not reason or not reason.strip():
            raise ValidationError("Rejection reason is required")
        approver = await self.users.require_permission(approver_id, "can_approve")

        async with self._locked_transaction(transaction_id) as transaction:
            self._ensure_transition(
                transaction, TransactionStatus.REJECTED, "Only pending transactions can be rejected"
            )
            updated = await self.storage.transactions.update(transaction_id, {
                "status": TransactionStatus.REJECTED,
                "rejected_by": approver.id,
                "rejected_date": self.clock.now(),
                "rejection_reason": reason.strip(),
            })
            if updated is None:
                raise StorageFailure("Failed to update transaction status", details={"transaction_id": transaction_id})

        rejected = Transaction.from_document(updated)
        logger.info(f"Rejected {rejected.transaction_number} by {approver.name}: {rejected.rejection_reason}")
        self.notifications.notify(
            rejected.user_id,
            NotificationType.APPROVAL_REJECTED,
            "Checkout Rejected",
            f"Your checkout request has been rejected. Reason: {rejected.rejection_reason}",
            related_transaction_id=rejected.id,
            related_item_id=rejected.item_id,
            priority=NotificationPriority.HIGH,
            action_url=f"/transactions/{rejected.id}",
            action_text="View Transaction",
        )
        return rejected

    async def cancel(self, transaction_id: str, actor_id: str, reason: Optional[str] = None) -> Transaction:
        """pending -> cancelled by the borrower or an approver"""
        actor = await self.users.require_user(actor_id)

        async with self._locked_transaction(transaction_id) as transaction:
            self._require_owner_or_approver(actor, transaction, "cancel")
            self._ensure_transition(
                transaction, TransactionStatus.CANCELLED, "Only pending transactions can be cancelled"
            )
            updated = await self.storage.transactions.update(transaction_id, {
                "status": TransactionStatus.CANCELLED,
                "cancelled_by": actor.id,
                "cancelled_date": self.clock.now(),
                "cancellation_reason": (reason or "").strip(),
            })
            if updated is None:
                raise StorageFailure("Failed to update transaction status", details={"transaction_id": transaction_id})

        cancelled = Transaction.from_document(updated)
        logger.info(f"Cancelled {cancelled.transaction_number} by {actor.name}")
        return cancelled

    @staticmethod
    def _require_owner_or_approver(actor: User, transaction: Transaction, action: str) -> None:
        if actor.id != transaction.user_id and not actor.can_approve:
            raise PermissionDenied(
                f"You do not have permission to {action} this transaction",
                {"user_id": actor.id, "transaction_id": transaction.id},
            )

    # Return

    async def return_item(self, transaction_id: str, returner_id: str,
                          condition: Optional[str] = None, notes: Optional[str] = None) -> Transaction:
        """active|overdue -> returned, restoring stock and charging any late fee"""
        request = parse_request(ReturnCreate, condition=condition, notes=notes)
        returner = await self.users.require_permission(returner_id, "can_return")

        async with self._locked_transaction(transaction_id) as transaction:
            self._require_owner_or_approver(returner, transaction, "return")
            self._ensure_transition(
                transaction, TransactionStatus.RETURNED, "Only active or overdue transactions can be returned"
            )
            if transaction.requires_storage_photo and not transaction.storage_photo_uploaded:
                raise ValidationError(
                    "Please upload a storage visit photo before returning this item",
                    {"transaction_id": transaction_id, "requires_storage_photo": True},
                )
            item = await self.items.require_item(transaction.item_id)

            now = self.clock.now()
            penalty = calculate_late_fee(
                transaction.expected_return_date,
                now,
                daily_rate=self.settings.LATE_FEE_DAILY_RATE,
                currency=self.settings.LATE_FEE_CURRENCY,
                issued_by=returner.id,
            )
            updates: Dict[str, Any] = {
                "status": TransactionStatus.RETURNED,
                "actual_return_date": now,
                "return_condition": request.condition or ReturnCondition.GOOD,
                "return_notes": request.notes or "",
                "returned_by": returner.id,
            }
            if penalty:
                updates["is_overdue"] = True
                updates["penalties"] = [*transaction.penalties, penalty]

            restore = {
                "status": transaction.status,
                "actual_return_date": None,
                "return_condition": transaction.return_condition,
                "return_notes": transaction.return_notes,
                "returned_by": transaction.returned_by,
                "is_overdue": transaction.is_overdue,
                "penalties": transaction.penalties,
            }
            try:
                updated = await self.storage.transactions.update(transaction_id, updates)
            except Exception as e:
                await self._roll_back(transaction_id, restore, e, "return")
            if not updated or updated.get("status") != TransactionStatus.RETURNED.value:
                raise StorageFailure("Failed to update transaction in database", details={"transaction_id": transaction_id})

            restored = min(item.available_quantity + transaction.quantity, item.total_quantity)
            try:
                item_document = await self.storage.items.update(item.id, {"available_quantity": restored})
                if item_document is None:
                    raise StorageFailure(f"Item {item.id} disappeared during return")
            except Exception as e:
                await self._roll_back(transaction_id, restore, e, "return")

        returned = Transaction.from_document(updated)
        logger.info(
            f"Returned {returned.transaction_number}: {returned.quantity} x {item.name}"
            + (f" ({penalty.reason}, {penalty.amount:.2f} {penalty.currency})" if penalty else "")
        )

        message = f"You have successfully returned {returned.quantity} unit(s) of {item.name}."
        if penalty:
            message += f" A late fee of ${penalty.amount:.2f} was applied ({penalty.reason})."
        self.notifications.notify(
            returned.user_id,
            NotificationType.RETURN_CONFIRMED,
            "Return Confirmed",
            message,
            related_transaction_id=returned.id,
            related_item_id=returned.item_id,
            priority=NotificationPriority.HIGH if penalty else NotificationPriority.MEDIUM,
            action_url=f"/transactions/{returned.id}",
            action_text="View Transaction",
        )
        return returned

    # Extensions and evidence

    async def request_extension(self, transaction_id: str, requester_id: str,
                                new_return_date: datetime, reason: str) -> Extension:
        """Append a pending extension request; status and stock are unchanged"""
        request = parse_request(ExtensionCreate, new_return_date=new_return_date, reason=reason)
        requester = await self.users.require_user(requester_id)

        async with self._locked_transaction(transaction_id) as transaction:
            self._require_owner_or_approver(requester, transaction, "extend")
            if transaction.status != TransactionStatus.ACTIVE:
                raise StateConflict(
                    "Only active transactions can be extended", current_status=transaction.status.value
                )
            if request.new_return_date <= transaction.expected_return_date:
                raise ValidationError(
                    "New return date must be after the current expected return date",
                    {"expected_return_date": transaction.expected_return_date.isoformat()},
                )

            extension = Extension(
                requested_by=requester.id,
                requested_date=self.clock.now(),
                new_return_date=request.new_return_date,
                reason=request.reason,
            )
            updated = await self.storage.transactions.update(transaction_id, {
                "extensions": [*transaction.extensions, extension],
            })
            if updated is None:
                raise StorageFailure("Failed to store extension request", details={"transaction_id": transaction_id})

        logger.info(f"Extension requested on {transaction.transaction_number} until {request.new_return_date:%Y-%m-%d}")
        self.notifications.notify_approvers(
            NotificationType.EXTENSION_REQUEST,
            "Extension Request",
            f"{requester.name} requested an extension for transaction {transaction.transaction_number}",
            related_transaction_id=transaction.id,
            related_item_id=transaction.item_id,
            priority=NotificationPriority.MEDIUM,
            action_url=f"/transactions/{transaction.id}",
            action_text="Review Request",
        )
        return extension

    async def record_storage_photo(self, transaction_id: str, actor_id: str, visit_type: str = "pickup",
                                   location: Optional[str] = None, notes: Optional[str] = None,
                                   photo_urls: Iterable[str] = ()) -> Transaction:
        """Note that storage-visit evidence exists; opens the return gate"""
        actor = await self.users.require_user(actor_id)

        async with self._locked_transaction(transaction_id) as transaction:
            self._require_owner_or_approver(actor, transaction, "upload photos for")
            if transaction.is_terminal:
                raise StateConflict(
                    "Storage photos can only be recorded for open transactions",
                    current_status=transaction.status.value,
                )
            visit = StorageVisit(
                visit_date=self.clock.now(),
                visit_type=visit_type,
                user_id=actor.id,
                photo_urls=list(photo_urls),
                location=location or "",
                notes=notes or "",
            )
            updated = await self.storage.transactions.update(transaction_id, {
                "storage_visits": [*transaction.storage_visits, visit],
                "storage_photo_uploaded": True,
            })
            if updated is None:
                raise StorageFailure("Failed to record storage visit", details={"transaction_id": transaction_id})

        logger.info(f"Storage visit recorded on {transaction.transaction_number} by {actor.name}")
        return Transaction.from_document(updated)
