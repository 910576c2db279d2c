# backend/msa_inventory/services/sweep_service.py
"""
Time-driven transitions.

``sweep_overdue`` moves active loans past their return date to overdue and
``sweep_due_soon`` reminds borrowers of loans about to fall due. Both take
``now`` from the caller so a scheduler or a test decides what time it is,
and both are safe to run repeatedly.
"""
from datetime import datetime, timedelta
from typing import List, Optional
import logging

from msa_inventory.core.config import Settings, settings as default_settings
from msa_inventory.core.clock import Clock, SystemClock, ensure_utc
from msa_inventory.core.exceptions import InventoryError
from msa_inventory.models.notification_model import NotificationPriority, NotificationType
from msa_inventory.models.transaction_model import Transaction, TransactionStatus
from msa_inventory.services.notification_service import NotificationDispatcher
from msa_inventory.services.penalty_service import calculate_late_fee
from msa_inventory.services.scheduler import PeriodicJob
from msa_inventory.storage.base import StorageBackend
from msa_inventory.utils.locks import KeyedLock

logger = logging.getLogger(__name__)

class SweepService:
    def __init__(self, storage: StorageBackend, notifications: NotificationDispatcher,
                 item_locks: KeyedLock, settings: Optional[Settings] = None, clock: Optional[Clock] = None):
        self.storage = storage
        self.notifications = notifications
        self.item_locks = item_locks
        self.settings = settings or default_settings
        self.clock = clock or SystemClock()

    @property
    def due_soon_window(self) -> timedelta:
        return timedelta(hours=self.settings.DUE_SOON_WINDOW_HOURS)

    async def _active_transactions(self) -> List[Transaction]:
        documents = await self.storage.transactions.find_all({"status": TransactionStatus.ACTIVE})
        return [Transaction.from_document(d) for d in documents]

    async def _item_name(self, item_id: str) -> str:
        item = await self.storage.items.find_by_id(item_id)
        return item["name"] if item else "Unknown item"

    async def sweep_overdue(self, now: datetime) -> int:
        """Mark every active loan past its return date as overdue; returns how many changed"""
        now = ensure_utc(now)
        count = 0
        for candidate in await self._active_transactions():
            if not candidate.is_past_due(now):
                continue
            try:
                async with self.item_locks.hold(candidate.item_id):
                    # A return or another sweep may have got here first
                    transaction = Transaction.from_document(
                        await self.storage.transactions.find_by_id(candidate.id)
                    )
                    if not transaction or not transaction.is_past_due(now):
                        continue
                    updated = await self.storage.transactions.update(transaction.id, {
                        "status": TransactionStatus.OVERDUE,
                        "is_overdue": True,
                        "overdue_notification_sent": True,
                    })
                    if updated is None:
                        continue
            except InventoryError as e:
                logger.error(f"Could not mark {candidate.transaction_number} overdue: {e.message}")
                continue

            count += 1
            await self._notify_overdue(transaction, now)

        logger.info(f"Overdue sweep at {now.isoformat()}: {count} transaction(s) marked overdue")
        return count

    async def _notify_overdue(self, transaction: Transaction, now: datetime) -> None:
        item_name = await self._item_name(transaction.item_id)
        accrued = calculate_late_fee(
            transaction.expected_return_date,
            now=now,
            daily_rate=self.settings.LATE_FEE_DAILY_RATE,
            currency=self.settings.LATE_FEE_CURRENCY,
        )
        fee = accrued.amount if accrued else 0.0
        due = transaction.expected_return_date.strftime("%Y-%m-%d")
        metadata = {"accrued_fee": fee, "currency": self.settings.LATE_FEE_CURRENCY}

        self.notifications.notify(
            transaction.user_id,
            NotificationType.OVERDUE_ALERT,
            "Item Overdue",
            f"{item_name} was due back on {due}. Late fees so far: ${fee:.2f}. Please return it as soon as possible.",
            related_transaction_id=transaction.id,
            related_item_id=transaction.item_id,
            priority=NotificationPriority.URGENT,
            action_url=f"/transactions/{transaction.id}",
            action_text="Return Item",
            metadata=metadata,
        )
        self.notifications.notify_approvers(
            NotificationType.OVERDUE_ALERT,
            "Overdue Item Alert",
            f"Transaction {transaction.transaction_number} ({item_name}) is overdue since {due}",
            related_transaction_id=transaction.id,
            related_item_id=transaction.item_id,
            action_url=f"/transactions/{transaction.id}",
            action_text="View Transaction",
            metadata=metadata,
            exclude=(transaction.user_id,),
        )

    async def sweep_due_soon(self, now: datetime) -> int:
        """Remind borrowers whose loans fall due within the window; returns reminders sent"""
        now = ensure_utc(now)
        window_end = now + self.due_soon_window
        count = 0
        for candidate in await self._active_transactions():
            if not now <= candidate.expected_return_date <= window_end:
                continue
            try:
                async with self.item_locks.hold(candidate.item_id):
                    transaction = Transaction.from_document(
                        await self.storage.transactions.find_by_id(candidate.id)
                    )
                    if not transaction or transaction.status != TransactionStatus.ACTIVE:
                        continue
                    if self._already_reminded(transaction):
                        continue
                    updated = await self.storage.transactions.update(transaction.id, {
                        "reminders_sent": transaction.reminders_sent + 1,
                        "last_reminder_date": now,
                    })
                    if updated is None:
                        continue
            except InventoryError as e:
                logger.error(f"Could not record reminder for {candidate.transaction_number}: {e.message}")
                continue

            count += 1
            item_name = await self._item_name(transaction.item_id)
            self.notifications.notify(
                transaction.user_id,
                NotificationType.ITEM_DUE_SOON,
                "Item Due Soon",
                f"{item_name} is due back on {transaction.expected_return_date:%Y-%m-%d %H:%M} UTC",
                related_transaction_id=transaction.id,
                related_item_id=transaction.item_id,
                action_url=f"/transactions/{transaction.id}",
                action_text="View Transaction",
            )

        logger.info(f"Due-soon sweep at {now.isoformat()}: {count} reminder(s) sent")
        return count

    def _already_reminded(self, transaction: Transaction) -> bool:
        # One reminder per due date; an extended due date earns a new one
        last = transaction.last_reminder_date
        return last is not None and last >= transaction.expected_return_date - self.due_soon_window

    def build_jobs(self, sleep=None) -> List[PeriodicJob]:
        return [
            PeriodicJob(
                "overdue-sweep",
                self.sweep_overdue,
                self.settings.OVERDUE_SWEEP_INTERVAL_SECONDS,
                clock=self.clock,
                sleep=sleep,
            ),
            PeriodicJob(
                "due-soon-sweep",
                self.sweep_due_soon,
                self.settings.DUE_SOON_SWEEP_INTERVAL_SECONDS,
                clock=self.clock,
                sleep=sleep,
            ),
        ]
