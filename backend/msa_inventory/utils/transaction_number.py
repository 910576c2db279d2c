# backend/msa_inventory/utils/transaction_number.py
import logging
import secrets
from datetime import datetime
from typing import Any, Callable, Dict

from msa_inventory.core.exceptions import DuplicateValue, StorageFailure
from msa_inventory.storage.base import Collection

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 20


def generate_transaction_number(now: datetime) -> str:
    """Human readable number: TXN-YYYYMMDD-NNNN"""
    suffix = secrets.randbelow(10000)
    return f"TXN-{now.strftime('%Y%m%d')}-{suffix:04d}"


async def unique_transaction_number(transactions: Collection, now: datetime) -> str:
    for _ in range(MAX_ATTEMPTS):
        number = generate_transaction_number(now)
        if not await transactions.find_by_field("transaction_number", number):
            return number
    raise StorageFailure(f"Could not allocate a unique transaction number for {now:%Y-%m-%d}")


async def create_numbered(transactions: Collection, build: Callable[[str], Dict[str, Any]],
                          now: datetime) -> Dict[str, Any]:
    """
    Store the document ``build(number)`` under a fresh transaction number.

    The lookup in ``unique_transaction_number`` can race with another writer;
    the store itself refuses the duplicate, in which case a new number is drawn.
    """
    for _ in range(MAX_ATTEMPTS):
        number = await unique_transaction_number(transactions, now)
        try:
            return await transactions.create(build(number))
        except DuplicateValue as e:
            if e.field != "transaction_number":
                raise
            logger.warning(f"Transaction number {number} was taken concurrently, drawing another")
    raise StorageFailure(f"Could not allocate a unique transaction number for {now:%Y-%m-%d}")
