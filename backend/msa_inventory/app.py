# backend/msa_inventory/app.py
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional
import logging
import sys

from motor.motor_asyncio import AsyncIOMotorClient

from msa_inventory.core.clock import Clock, SystemClock
from msa_inventory.core.config import Settings, settings as default_settings
from msa_inventory.services.guest_request_service import GuestRequestService
from msa_inventory.services.item_service import ItemService
from msa_inventory.services.notification_service import NotificationDispatcher
from msa_inventory.services.scheduler import Scheduler
from msa_inventory.services.sweep_service import SweepService
from msa_inventory.services.transaction_service import TransactionService
from msa_inventory.services.user_service import UserService
from msa_inventory.storage.base import StorageBackend
from msa_inventory.storage.factory import create_storage
from msa_inventory.utils.locks import KeyedLock

logger = logging.getLogger(__name__)


def configure_logging(settings: Settings) -> None:
    logging.getLogger("pymongo").setLevel(logging.WARNING)
    logging.basicConfig(
        level=logging.INFO if not settings.DEBUG else logging.DEBUG,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler(settings.LOG_FILE)
        ]
    )


@dataclass
class Application:
    settings: Settings
    clock: Clock
    storage: StorageBackend
    item_locks: KeyedLock
    notifications: NotificationDispatcher
    users: UserService
    items: ItemService
    transactions: TransactionService
    sweeps: SweepService
    guest_requests: GuestRequestService
    scheduler: Scheduler


def build_application(settings: Settings, storage: StorageBackend, clock: Optional[Clock] = None) -> Application:
    """Wire services around an already-created storage backend"""
    clock = clock or SystemClock()
    item_locks = KeyedLock(timeout=settings.LOCK_TIMEOUT_SECONDS)
    notifications = NotificationDispatcher(storage, clock)
    users = UserService(storage)
    items = ItemService(storage, users, item_locks=item_locks, clock=clock)
    transactions = TransactionService(
        storage, users, items, notifications, settings=settings, clock=clock, item_locks=item_locks
    )
    sweeps = SweepService(storage, notifications, item_locks, settings=settings, clock=clock)
    scheduler = Scheduler()
    for job in sweeps.build_jobs():
        scheduler.add(job)

    return Application(
        settings=settings,
        clock=clock,
        storage=storage,
        item_locks=item_locks,
        notifications=notifications,
        users=users,
        items=items,
        transactions=transactions,
        sweeps=sweeps,
        guest_requests=GuestRequestService(
            storage, users, notifications, clock, review_locks=KeyedLock(timeout=settings.LOCK_TIMEOUT_SECONDS)
        ),
        scheduler=scheduler,
    )


@asynccontextmanager
async def lifespan(settings: Optional[Settings] = None, clock: Optional[Clock] = None,
                   client: Optional[AsyncIOMotorClient] = None, start_scheduler: bool = True):
    """
    Manage application lifespan - startup and shutdown
    """
    settings = settings or default_settings
    storage = create_storage(settings, clock=clock, client=client)

    # Startup
    try:
        logger.info(f"Starting {settings.PROJECT_NAME} with {settings.STORAGE_MODE} storage...")
        await storage.connect()
        application = build_application(settings, storage, clock)
        application.notifications.start()
        if start_scheduler:
            application.scheduler.start()
        logger.info(f"{settings.PROJECT_NAME} started successfully")
    except Exception as e:
        logger.error(f"Failed to start application: {str(e)}")
        await storage.close()
        raise

    try:
        yield application
    finally:
        # Shutdown
        logger.info("Shutting down application...")
        await application.scheduler.stop()
        await application.notifications.shutdown(settings.STORAGE_TIMEOUT_SECONDS)
        # anything left over is delivered inline while storage is still open
        await application.notifications.flush()
        await storage.close()
