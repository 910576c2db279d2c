# backend/msa_inventory/services/item_service.py
from typing import Optional, List
import logging
import uuid

from msa_inventory.core.clock import Clock, SystemClock
from msa_inventory.core.exceptions import NotFound, ValidationError
from msa_inventory.models.item_model import Item
from msa_inventory.models.transaction_model import (
    Transaction, TransactionStatus, TransactionType, ON_LOAN_STATUSES, RESERVING_STATUSES
)
from msa_inventory.schemas.item_schema import ItemCreate, ItemUpdate, ItemSearch, LedgerCheck, QuantityAdjustment
from msa_inventory.services.user_service import UserService
from msa_inventory.storage.base import StorageBackend
from msa_inventory.utils.locks import KeyedLock
from msa_inventory.utils.transaction_number import create_numbered
from msa_inventory.utils.validation import parse_request

logger = logging.getLogger(__name__)

class ItemService:
    """
    Inventory ledger.

    Owns item records and the only write path to item quantities outside the
    checkout flow: ``adjust_quantity``, which is serialised on the same
    per-item lock as the transaction state machine and leaves an adjustment
    transaction behind as its audit trail.
    """

    def __init__(self, storage: StorageBackend, users: UserService,
                 item_locks: Optional[KeyedLock] = None, clock: Optional[Clock] = None):
        self.storage = storage
        self.users = users
        self.item_locks = item_locks or KeyedLock()
        self.clock = clock or SystemClock()

    async def create_item(self, created_by: Optional[str] = None, **fields) -> Item:
        item_data = parse_request(ItemCreate, **fields)
        item_dict = item_data.model_dump()

        if item_dict["available_quantity"] is None:
            item_dict["available_quantity"] = item_dict["total_quantity"]
        if item_dict["available_quantity"] > item_dict["total_quantity"]:
            raise ValidationError(
                "Available quantity cannot exceed total quantity",
                {"available": item_dict["available_quantity"], "total": item_dict["total_quantity"]},
            )
        if not item_dict["qr_code"]:
            item_dict["qr_code"] = f"ITEM_{uuid.uuid4()}"
        if item_dict.get("sku"):
            item_dict["sku"] = item_dict["sku"].strip().upper()

        await self._ensure_unique(item_dict)

        item_dict["created_by"] = created_by
        item_dict["last_modified_by"] = created_by
        item = Item(**item_dict)
        document = await self.storage.items.create(item.to_document())
        logger.info(f"Created item {item.name} ({item.total_quantity} {item.unit})")
        return Item.from_document(document)

    async def _ensure_unique(self, values: dict, item_id: Optional[str] = None) -> None:
        for field in Item.Settings.unique_fields:
            value = values.get(field)
            if not value:
                continue
            existing = await self.storage.items.find_by_field(field, value)
            if existing and existing["id"] != item_id:
                raise ValidationError(f"An item with {field} {value} already exists", {field: value})

    async def get_item_by_id(self, item_id: str) -> Optional[Item]:
        return Item.from_document(await self.storage.items.find_by_id(item_id))

    async def require_item(self, item_id: str) -> Item:
        item = await self.get_item_by_id(item_id)
        if not item:
            raise NotFound("Item", item_id)
        return item

    async def get_item_by_qr_code(self, qr_code: str) -> Optional[Item]:
        return Item.from_document(await self.storage.items.find_by_field("qr_code", qr_code))

    async def get_item_by_barcode(self, barcode: str) -> Optional[Item]:
        return Item.from_document(await self.storage.items.find_by_field("barcode", barcode))

    async def search_items(self, **filters) -> List[Item]:
        search_params = parse_request(ItemSearch, **filters)
        documents = await self.storage.items.find_all(search_params.model_dump(exclude_none=True))
        return [Item.from_document(d) for d in documents]

    async def get_categories(self) -> List[str]:
        items = await self.search_items()
        return sorted({item.category for item in items if item.category})

    async def update_item(self, item_id: str, modified_by: Optional[str] = None, **fields) -> Optional[Item]:
        item_data = parse_request(ItemUpdate, **fields)
        update_data = item_data.model_dump(exclude_unset=True)
        if not update_data:
            return await self.get_item_by_id(item_id)

        if update_data.get("sku"):
            update_data["sku"] = update_data["sku"].strip().upper()
        await self._ensure_unique(update_data, item_id)

        update_data["last_modified_by"] = modified_by
        document = await self.storage.items.update(item_id, update_data)
        if document:
            logger.info(f"Updated item {item_id}: {sorted(update_data)}")
        return Item.from_document(document)

    async def open_transactions(self, item_id: str) -> List[Transaction]:
        documents = await self.storage.transactions.find_all({"item_id": item_id})
        return [
            t for t in (Transaction.from_document(d) for d in documents)
            if t.type != TransactionType.ADJUSTMENT and t.status in RESERVING_STATUSES
        ]

    async def delete_item(self, item_id: str) -> bool:
        async with self.item_locks.hold(item_id):
            item = await self.get_item_by_id(item_id)
            if not item:
                return False

            open_transactions = await self.open_transactions(item_id)
            if open_transactions:
                raise ValidationError(
                    "Cannot delete item with active or pending transactions",
                    {"open_transactions": [t.transaction_number for t in open_transactions]},
                )

            deleted = await self.storage.items.delete(item_id)
        if deleted:
            logger.info(f"Deleted item {item.name} ({item_id})")
        return deleted

    async def adjust_quantity(self, item_id: str, actor_id: str, adjustment: int, reason: str) -> Item:
        """Administrative stock change, recorded as an adjustment transaction"""
        request = parse_request(QuantityAdjustment, adjustment=adjustment, reason=reason)
        if request.adjustment == 0:
            raise ValidationError("Adjustment must be a non-zero number of units")
        await self.users.require_permission(actor_id, "can_manage_items")

        async with self.item_locks.hold(item_id):
            item = await self.require_item(item_id)
            new_total = item.total_quantity + request.adjustment
            new_available = item.available_quantity + request.adjustment
            if new_total < 0 or new_available < 0:
                raise ValidationError(
                    "Adjustment would result in negative quantity",
                    {"total": item.total_quantity, "available": item.available_quantity,
                     "adjustment": request.adjustment},
                )

            document = await self.storage.items.update(item_id, {
                "total_quantity": new_total,
                "available_quantity": new_available,
                "last_modified_by": actor_id,
            })
            if document is None:
                raise NotFound("Item", item_id)

            try:
                now = self.clock.now()
                direction = "increased" if request.adjustment > 0 else "decreased"

                def audit_entry(number: str) -> dict:
                    return Transaction(
                        transaction_number=number,
                        type=TransactionType.ADJUSTMENT,
                        status=TransactionStatus.APPROVED,
                        item_id=item_id,
                        user_id=actor_id,
                        quantity=abs(request.adjustment),
                        checkout_date=now,
                        expected_return_date=now,
                        purpose=request.reason,
                        notes=f"Quantity {direction} by {abs(request.adjustment)} units",
                        approval_required=False,
                        approved_by=actor_id,
                        approved_date=now,
                        checked_out_by=actor_id,
                    ).to_document()

                await create_numbered(self.storage.transactions, audit_entry, now)
            except Exception as e:
                # Without its audit entry the change must not stand
                logger.error(f"Error recording adjustment for item {item_id}, reverting: {str(e)}")
                await self.storage.items.update(item_id, {
                    "total_quantity": item.total_quantity,
                    "available_quantity": item.available_quantity,
                })
                raise

        logger.info(f"Adjusted item {item_id} by {request.adjustment}: {request.reason}")
        return Item.from_document(document)

    async def reconcile(self, item_id: str) -> LedgerCheck:
        """Compare available stock with total minus units out on loan"""
        item = await self.require_item(item_id)
        documents = await self.storage.transactions.find_all({"item_id": item_id})
        loans = [
            t for t in (Transaction.from_document(d) for d in documents)
            if t.type != TransactionType.ADJUSTMENT
        ]
        on_loan = sum(t.quantity for t in loans if t.status in ON_LOAN_STATUSES)
        pending = sum(t.quantity for t in loans if t.status == TransactionStatus.PENDING)
        return LedgerCheck(
            item_id=item_id,
            total_quantity=item.total_quantity,
            available_quantity=item.available_quantity,
            on_loan=on_loan,
            pending=pending,
            expected_available=item.total_quantity - on_loan,
        )
