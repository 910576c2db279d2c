# backend/msa_inventory/services/notification_service.py
"""
Outbound notifications.

The engine hands events to ``NotificationDispatcher.notify`` which only puts
them on a queue. A separate consumer task stores each one as a Notification
document. Nothing on the delivery side can fail or slow down a state
transition that has already been committed: every error is logged and the
event dropped.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from msa_inventory.core.clock import Clock, SystemClock
from msa_inventory.models.notification_model import (
    Notification, NotificationChannels, NotificationPriority, NotificationStatus, NotificationType
)
from msa_inventory.models.user_model import User
from msa_inventory.storage.base import StorageBackend

logger = logging.getLogger(__name__)

APPROVERS = "approvers"


@dataclass
class NotificationEvent:
    type: NotificationType
    title: str
    message: str
    recipient: Optional[str] = None
    # set to APPROVERS to fan out to every user allowed to approve
    audience: Optional[str] = None
    priority: NotificationPriority = NotificationPriority.MEDIUM
    related_transaction: Optional[str] = None
    related_item: Optional[str] = None
    action_url: str = ""
    action_text: str = ""
    channels: NotificationChannels = field(default_factory=NotificationChannels)
    metadata: Dict[str, Any] = field(default_factory=dict)
    exclude: tuple = ()


class NotificationDispatcher:
    def __init__(self, storage: StorageBackend, clock: Optional[Clock] = None):
        self.storage = storage
        self.clock = clock or SystemClock()
        self._queue: "asyncio.Queue[NotificationEvent]" = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None

    # Producer side - never raises

    def notify(
        self,
        recipient_id: str,
        type: NotificationType,
        title: str,
        message: str,
        related_transaction_id: Optional[str] = None,
        related_item_id: Optional[str] = None,
        priority: NotificationPriority = NotificationPriority.MEDIUM,
        **extra,
    ) -> None:
        self._enqueue(NotificationEvent(
            type=type,
            title=title,
            message=message,
            recipient=recipient_id,
            priority=priority,
            related_transaction=related_transaction_id,
            related_item=related_item_id,
            **extra,
        ))

    def notify_approvers(
        self,
        type: NotificationType,
        title: str,
        message: str,
        related_transaction_id: Optional[str] = None,
        related_item_id: Optional[str] = None,
        priority: NotificationPriority = NotificationPriority.HIGH,
        **extra,
    ) -> None:
        """Send to every active user holding the approve permission"""
        self._enqueue(NotificationEvent(
            type=type,
            title=title,
            message=message,
            audience=APPROVERS,
            priority=priority,
            related_transaction=related_transaction_id,
            related_item=related_item_id,
            **extra,
        ))

    def _enqueue(self, event: NotificationEvent) -> None:
        try:
            self._queue.put_nowait(event)
        except Exception as e:
            logger.error(f"Dropping notification '{event.title}': {str(e)}")

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    # Consumer side

    async def _recipients(self, event: NotificationEvent) -> List[str]:
        if event.audience == APPROVERS:
            documents = await self.storage.users.find_all({})
            approvers = [User.from_document(d) for d in documents]
            return [u.id for u in approvers if u.can_approve and u.id not in event.exclude]
        return [event.recipient] if event.recipient else []

    async def deliver(self, event: NotificationEvent) -> int:
        """Persist one event; returns how many notifications were stored"""
        delivered = 0
        try:
            recipients = await self._recipients(event)
        except Exception as e:
            logger.error(f"Could not resolve recipients for '{event.title}': {str(e)}")
            return 0

        for recipient in recipients:
            try:
                notification = Notification(
                    recipient=recipient,
                    type=event.type,
                    title=event.title,
                    message=event.message,
                    priority=event.priority,
                    channels=event.channels,
                    related_transaction=event.related_transaction,
                    related_item=event.related_item,
                    action_url=event.action_url,
                    action_text=event.action_text,
                    metadata=event.metadata,
                )
                stored = await self.storage.notifications.create(notification.to_document())
                await self.storage.notifications.update(stored["id"], {
                    "status": NotificationStatus.SENT,
                    "sent_at": self.clock.now(),
                })
                delivered += 1
            except Exception as e:
                logger.error(f"Notification error (non-critical) for {recipient}: {str(e)}")
        return delivered

    async def flush(self) -> int:
        """Deliver everything queued so far in the calling task"""
        delivered = 0
        while not self._queue.empty():
            event = self._queue.get_nowait()
            try:
                delivered += await self.deliver(event)
            finally:
                self._queue.task_done()
        return delivered

    async def _run(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self.deliver(event)
            except Exception as e:
                logger.error(f"Notification dispatcher error: {str(e)}", exc_info=True)
            finally:
                self._queue.task_done()

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(), name="notification-dispatcher")
            logger.info("Notification dispatcher started")

    async def drain(self) -> None:
        """Wait until the running consumer has handled every queued event"""
        await self._queue.join()

    async def shutdown(self, timeout: float = 10.0) -> None:
        """Let the consumer finish what is queued, then stop it"""
        if self._task is not None and not self._task.done():
            try:
                await asyncio.wait_for(self.drain(), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Notification queue not drained after {timeout}s, {self.pending} event(s) left")
        await self.stop()

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Notification dispatcher stopped")

    # Reads

    async def get_notifications_for_user(self, user_id: str, unread_only: bool = False) -> List[Notification]:
        filter: Dict[str, Any] = {"recipient": user_id}
        if unread_only:
            filter["is_read"] = False
        documents = await self.storage.notifications.find_all(filter)
        return [Notification.from_document(d) for d in documents]

    async def mark_read(self, notification_id: str) -> Optional[Notification]:
        document = await self.storage.notifications.update(notification_id, {
            "is_read": True,
            "read_at": self.clock.now(),
            "status": NotificationStatus.READ,
        })
        return Notification.from_document(document)
