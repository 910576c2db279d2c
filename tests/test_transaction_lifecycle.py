import asyncio
import re
from datetime import timedelta

import pytest

from msa_inventory.core.exceptions import (
    InsufficientAvailability, NotFound, PermissionDenied, StateConflict, StorageFailure, ValidationError
)
from msa_inventory.models.transaction_model import ExtensionStatus, ReturnCondition, TransactionStatus


async def available(app, item):
    return (await app.items.require_item(item.id)).available_quantity


async def test_scenario_a_checkout_approve_return_on_time(app, admin, borrower, camera, due, clock):
    transaction = await app.transactions.checkout(
        item_id=camera.id,
        user_id=borrower.id,
        quantity=3,
        purpose="Club photo shoot",
        expected_return_date=due,
    )
    assert transaction.status == TransactionStatus.PENDING
    assert transaction.approval_required is True
    assert re.fullmatch(r"TXN-20240101-\d{4}", transaction.transaction_number)
    assert await available(app, camera) == 5

    approved = await app.transactions.approve(transaction.id, admin.id)
    assert approved.status == TransactionStatus.ACTIVE
    assert approved.approved_by == admin.id
    assert approved.approved_date == clock.now()
    assert await available(app, camera) == 2

    clock.advance(days=2)
    returned = await app.transactions.return_item(transaction.id, borrower.id)
    assert returned.status == TransactionStatus.RETURNED
    assert returned.actual_return_date == clock.now()
    assert returned.return_condition == ReturnCondition.GOOD
    assert returned.returned_by == borrower.id
    assert returned.penalties == []
    assert returned.is_overdue is False
    assert await available(app, camera) == 5


async def test_scenario_b_late_return_charges_daily_fee(app, admin, borrower, camera, due, clock, lend):
    transaction = await lend(camera, borrower, admin, 2, due)
    assert await available(app, camera) == 3

    clock.set_time(due + timedelta(days=4))
    returned = await app.transactions.return_item(transaction.id, borrower.id, condition="fair", notes="Scratched lens cap")

    assert returned.is_overdue is True
    assert len(returned.penalties) == 1
    penalty = returned.penalties[0]
    assert penalty.amount == 20.0
    assert penalty.reason == "Item returned 4 day(s) late"
    assert returned.outstanding_penalties == 20.0
    assert returned.return_condition == ReturnCondition.FAIR
    assert returned.return_notes == "Scratched lens cap"
    assert await available(app, camera) == 5


async def test_scenario_c_second_approval_fails_when_stock_shrank(app, admin, borrower, other_user, due):
    projector = await app.items.create_item(name="Projector", category="AV", total_quantity=4)
    first = await app.transactions.checkout(
        item_id=projector.id, user_id=borrower.id, quantity=2, purpose="Talk", expected_return_date=due
    )
    second = await app.transactions.checkout(
        item_id=projector.id, user_id=other_user.id, quantity=2, purpose="Workshop", expected_return_date=due
    )
    # Two units are written off while both requests wait for approval
    await app.items.adjust_quantity(projector.id, admin.id, -2, "Two units broken")
    assert await available(app, projector) == 2

    await app.transactions.approve(first.id, admin.id)
    assert await available(app, projector) == 0

    with pytest.raises(ValidationError) as exc_info:
        await app.transactions.approve(second.id, admin.id)
    assert isinstance(exc_info.value, InsufficientAvailability)
    assert exc_info.value.details["available"] == 0
    assert (await app.transactions.require_transaction(second.id)).status == TransactionStatus.PENDING
    assert await available(app, projector) == 0


async def test_scenario_d_storage_photo_gate(app, admin, borrower, camera, due, lend):
    app.settings.REQUIRE_STORAGE_PHOTO = True
    transaction = await lend(camera, borrower, admin, 2, due)
    assert transaction.requires_storage_photo is True

    with pytest.raises(ValidationError):
        await app.transactions.return_item(transaction.id, borrower.id)
    assert (await app.transactions.require_transaction(transaction.id)).status == TransactionStatus.ACTIVE
    assert await available(app, camera) == 3

    with_photo = await app.transactions.record_storage_photo(
        transaction.id, borrower.id, visit_type="return", location="Room 101", photo_urls=["shelf.jpg"]
    )
    assert with_photo.storage_photo_uploaded is True
    assert with_photo.storage_visits[0].photo_urls == ["shelf.jpg"]

    returned = await app.transactions.return_item(transaction.id, borrower.id)
    assert returned.status == TransactionStatus.RETURNED
    assert await available(app, camera) == 5


async def test_scenario_e_reject_leaves_stock_alone(app, admin, borrower, camera, due):
    transaction = await app.transactions.checkout(
        item_id=camera.id, user_id=borrower.id, quantity=4, purpose="Trip", expected_return_date=due
    )
    rejected = await app.transactions.reject(transaction.id, admin.id, "  Not available that week ")

    assert rejected.status == TransactionStatus.REJECTED
    assert rejected.rejection_reason == "Not available that week"
    assert rejected.rejected_by == admin.id
    assert await available(app, camera) == 5


async def test_reject_requires_reason(app, admin, borrower, camera, due):
    transaction = await app.transactions.checkout(
        item_id=camera.id, user_id=borrower.id, quantity=1, purpose="Trip", expected_return_date=due
    )
    with pytest.raises(ValidationError):
        await app.transactions.reject(transaction.id, admin.id, "   ")


async def test_checkout_counts_pending_requests(app, borrower, other_user, camera, due):
    await app.transactions.checkout(
        item_id=camera.id, user_id=borrower.id, quantity=3, purpose="Shoot", expected_return_date=due
    )
    with pytest.raises(InsufficientAvailability) as exc_info:
        await app.transactions.checkout(
            item_id=camera.id, user_id=other_user.id, quantity=3, purpose="Shoot", expected_return_date=due
        )
    assert "Only 2 unit(s)" in exc_info.value.message
    assert exc_info.value.details == {"available": 2, "requested": 3}

    smaller = await app.transactions.checkout(
        item_id=camera.id, user_id=other_user.id, quantity=2, purpose="Shoot", expected_return_date=due
    )
    assert smaller.status == TransactionStatus.PENDING


async def test_checkout_ignores_per_item_approval_flag(app, admin, borrower, due):
    tripod = await app.items.create_item(name="Tripod", category="Media", total_quantity=2, requires_approval=False)
    transaction = await app.transactions.checkout(
        item_id=tripod.id, user_id=borrower.id, quantity=1, purpose="Shoot", expected_return_date=due
    )
    assert transaction.status == TransactionStatus.PENDING
    assert transaction.approval_required is True


@pytest.mark.parametrize("changes", [
    {"quantity": 0},
    {"purpose": "   "},
    {"expected_return_date": None},
])
async def test_checkout_input_validation(app, borrower, camera, due, changes):
    request = dict(item_id=camera.id, user_id=borrower.id, quantity=1, purpose="Shoot", expected_return_date=due)
    request.update(changes)
    with pytest.raises(ValidationError):
        await app.transactions.checkout(**request)


async def test_checkout_unknown_item(app, borrower, due):
    with pytest.raises(NotFound):
        await app.transactions.checkout(
            item_id="missing", user_id=borrower.id, quantity=1, purpose="Shoot", expected_return_date=due
        )


async def test_checkout_refuses_items_out_of_circulation(app, admin, borrower, camera, due):
    await app.items.update_item(camera.id, admin.id, status="maintenance")
    with pytest.raises(ValidationError):
        await app.transactions.checkout(
            item_id=camera.id, user_id=borrower.id, quantity=1, purpose="Shoot", expected_return_date=due
        )

    await app.items.update_item(camera.id, admin.id, status="active", is_checkoutable=False)
    with pytest.raises(ValidationError):
        await app.transactions.checkout(
            item_id=camera.id, user_id=borrower.id, quantity=1, purpose="Shoot", expected_return_date=due
        )


async def test_illegal_transitions_are_state_conflicts(app, admin, borrower, camera, due, lend):
    pending = await app.transactions.checkout(
        item_id=camera.id, user_id=borrower.id, quantity=1, purpose="Shoot", expected_return_date=due
    )
    with pytest.raises(StateConflict):
        await app.transactions.return_item(pending.id, borrower.id)

    active = await lend(camera, borrower, admin, 1, due)
    with pytest.raises(StateConflict):
        await app.transactions.approve(active.id, admin.id)
    with pytest.raises(StateConflict):
        await app.transactions.reject(active.id, admin.id, "Too late")
    with pytest.raises(StateConflict):
        await app.transactions.cancel(active.id, borrower.id)

    await app.transactions.return_item(active.id, borrower.id)
    with pytest.raises(StateConflict) as exc_info:
        await app.transactions.return_item(active.id, borrower.id)
    assert exc_info.value.current_status == "returned"


async def test_only_approvers_can_approve(app, borrower, manager, camera, due):
    transaction = await app.transactions.checkout(
        item_id=camera.id, user_id=borrower.id, quantity=1, purpose="Shoot", expected_return_date=due
    )
    with pytest.raises(PermissionDenied):
        await app.transactions.approve(transaction.id, borrower.id)

    approved = await app.transactions.approve(transaction.id, manager.id)
    assert approved.approved_by == manager.id


async def test_users_return_only_their_own_loans(app, admin, borrower, other_user, camera, due, lend):
    transaction = await lend(camera, borrower, admin, 1, due)

    with pytest.raises(PermissionDenied):
        await app.transactions.return_item(transaction.id, other_user.id)

    returned = await app.transactions.return_item(transaction.id, admin.id)
    assert returned.returned_by == admin.id


async def test_unknown_transaction(app, admin):
    with pytest.raises(NotFound):
        await app.transactions.approve("missing", admin.id)
    with pytest.raises(NotFound):
        await app.transactions.get_transaction_detail("missing")


async def test_cancel_by_borrower(app, borrower, other_user, camera, due):
    transaction = await app.transactions.checkout(
        item_id=camera.id, user_id=borrower.id, quantity=2, purpose="Shoot", expected_return_date=due
    )
    with pytest.raises(PermissionDenied):
        await app.transactions.cancel(transaction.id, other_user.id)

    cancelled = await app.transactions.cancel(transaction.id, borrower.id, "Event moved")
    assert cancelled.status == TransactionStatus.CANCELLED
    assert cancelled.cancelled_by == borrower.id
    assert cancelled.cancellation_reason == "Event moved"
    assert await app.transactions.effective_available(await app.items.require_item(camera.id)) == 5


async def test_request_extension(app, admin, borrower, camera, due, lend):
    transaction = await lend(camera, borrower, admin, 1, due)

    extension = await app.transactions.request_extension(
        transaction.id, borrower.id, due + timedelta(days=2), "Shoot ran long"
    )
    assert extension.status == ExtensionStatus.PENDING
    assert extension.requested_by == borrower.id

    stored = await app.transactions.require_transaction(transaction.id)
    assert stored.status == TransactionStatus.ACTIVE
    assert stored.expected_return_date == due
    assert len(stored.extensions) == 1
    assert await available(app, camera) == 4

    with pytest.raises(ValidationError):
        await app.transactions.request_extension(transaction.id, borrower.id, due - timedelta(days=1), "Earlier")
    with pytest.raises(ValidationError):
        await app.transactions.request_extension(transaction.id, borrower.id, due + timedelta(days=5), " ")


async def test_extension_needs_active_loan(app, borrower, camera, due):
    pending = await app.transactions.checkout(
        item_id=camera.id, user_id=borrower.id, quantity=1, purpose="Shoot", expected_return_date=due
    )
    with pytest.raises(StateConflict):
        await app.transactions.request_extension(pending.id, borrower.id, due + timedelta(days=1), "More time")


async def test_return_never_exceeds_total(app, admin, borrower, camera, due, lend, storage):
    transaction = await lend(camera, borrower, admin, 2, due)
    await storage.items.update(camera.id, {"available_quantity": 5})

    await app.transactions.return_item(transaction.id, borrower.id)
    assert await available(app, camera) == 5


async def test_failed_item_update_rolls_approval_back(app, admin, borrower, camera, due, storage, monkeypatch):
    transaction = await app.transactions.checkout(
        item_id=camera.id, user_id=borrower.id, quantity=2, purpose="Shoot", expected_return_date=due
    )

    async def broken_update(id, partial):
        raise StorageFailure("disk full")

    monkeypatch.setattr(storage.items, "update", broken_update)
    with pytest.raises(StorageFailure) as exc_info:
        await app.transactions.approve(transaction.id, admin.id)
    assert exc_info.value.fatal is False

    restored = await app.transactions.require_transaction(transaction.id)
    assert restored.status == TransactionStatus.PENDING
    assert restored.approved_by is None
    assert await available(app, camera) == 5


async def test_failed_rollback_is_fatal(app, admin, borrower, camera, due, storage, monkeypatch):
    transaction = await app.transactions.checkout(
        item_id=camera.id, user_id=borrower.id, quantity=2, purpose="Shoot", expected_return_date=due
    )
    original_update = storage.transactions.update
    calls = []

    async def update_once(id, partial):
        calls.append(partial)
        if len(calls) > 1:
            raise StorageFailure("connection lost")
        return await original_update(id, partial)

    async def broken_update(id, partial):
        raise StorageFailure("disk full")

    monkeypatch.setattr(storage.transactions, "update", update_once)
    monkeypatch.setattr(storage.items, "update", broken_update)

    with pytest.raises(StorageFailure) as exc_info:
        await app.transactions.approve(transaction.id, admin.id)
    assert exc_info.value.fatal is True
    assert exc_info.value.details["fatal"] is True


async def test_failed_item_update_rolls_return_back(app, admin, borrower, camera, due, storage, clock, lend, monkeypatch):
    transaction = await lend(camera, borrower, admin, 2, due)
    clock.set_time(due + timedelta(days=1))

    async def broken_update(id, partial):
        raise StorageFailure("disk full")

    monkeypatch.setattr(storage.items, "update", broken_update)
    with pytest.raises(StorageFailure):
        await app.transactions.return_item(transaction.id, borrower.id)
    monkeypatch.undo()

    restored = await app.transactions.require_transaction(transaction.id)
    assert restored.status == TransactionStatus.ACTIVE
    assert restored.actual_return_date is None
    assert restored.penalties == []
    assert await available(app, camera) == 3


async def test_ledger_stays_consistent(app, admin, borrower, other_user, camera, due, clock, lend):
    first = await lend(camera, borrower, admin, 2, due)
    await lend(camera, other_user, admin, 1, due)
    pending = await app.transactions.checkout(
        item_id=camera.id, user_id=borrower.id, quantity=1, purpose="Spare", expected_return_date=due
    )
    await app.transactions.return_item(first.id, borrower.id)
    await app.items.adjust_quantity(camera.id, admin.id, 3, "New stock")

    check = await app.items.reconcile(camera.id)
    assert check.consistent
    assert check.on_loan == 1
    assert check.pending == pending.quantity
    assert check.total_quantity == 8
    assert check.available_quantity == 7


async def test_concurrent_checkouts_never_oversell(app, admin, borrower, due):
    lens = await app.items.create_item(name="Zoom Lens", category="Media", total_quantity=3)

    results = await asyncio.gather(*[
        app.transactions.checkout(
            item_id=lens.id, user_id=borrower.id, quantity=1, purpose=f"Shoot {n}", expected_return_date=due
        )
        for n in range(6)
    ], return_exceptions=True)

    created = [r for r in results if not isinstance(r, Exception)]
    refused = [r for r in results if isinstance(r, Exception)]
    assert len(created) == 3
    assert all(isinstance(e, InsufficientAvailability) for e in refused)

    approved = await asyncio.gather(*[app.transactions.approve(t.id, admin.id) for t in created])
    assert all(t.status == TransactionStatus.ACTIVE for t in approved)
    assert await available(app, lens) == 0
    assert (await app.items.reconcile(lens.id)).consistent


async def test_concurrent_approvals_never_oversell(app, admin, borrower, due):
    lens = await app.items.create_item(name="Zoom Lens", category="Media", total_quantity=5)
    pending = [
        await app.transactions.checkout(
            item_id=lens.id, user_id=borrower.id, quantity=1, purpose="Shoot", expected_return_date=due
        )
        for _ in range(5)
    ]
    await app.items.adjust_quantity(lens.id, admin.id, -3, "Lost on tour")

    results = await asyncio.gather(
        *[app.transactions.approve(t.id, admin.id) for t in pending], return_exceptions=True
    )
    approved = [r for r in results if not isinstance(r, Exception)]
    assert len(approved) == 2
    assert all(isinstance(r, InsufficientAvailability) for r in results if isinstance(r, Exception))

    item = await app.items.require_item(lens.id)
    assert item.available_quantity == 0
    assert 0 <= item.available_quantity <= item.total_quantity


async def test_bulk_checkout(app, admin, borrower, camera, due):
    tripod = await app.items.create_item(name="Tripod", category="Media", total_quantity=2)

    created = await app.transactions.bulk_checkout(
        borrower.id,
        [{"item_id": camera.id, "quantity": 2}, {"item_id": tripod.id, "quantity": 1}],
        "Film night",
        due,
        notes="Bring batteries",
    )
    assert [t.item_id for t in created] == [camera.id, tripod.id]
    assert all(t.status == TransactionStatus.PENDING for t in created)
    assert "Bring batteries" in created[0].notes


async def test_bulk_checkout_is_all_or_nothing(app, borrower, camera, due):
    tripod = await app.items.create_item(name="Tripod", category="Media", total_quantity=1)

    with pytest.raises(ValidationError) as exc_info:
        await app.transactions.bulk_checkout(
            borrower.id,
            [{"item_id": camera.id, "quantity": 1}, {"item_id": tripod.id, "quantity": 2}, {"item_id": "missing", "quantity": 1}],
            "Film night",
            due,
        )
    assert len(exc_info.value.details["errors"]) == 2
    assert await app.transactions.list_transactions(user_id=borrower.id) == []

    with pytest.raises(ValidationError):
        await app.transactions.bulk_checkout(
            borrower.id,
            [{"item_id": camera.id, "quantity": 1}, {"item_id": camera.id, "quantity": 1}],
            "Film night",
            due,
        )


async def test_bulk_approve_reports_each_failure(app, admin, borrower, camera, due):
    first = await app.transactions.checkout(
        item_id=camera.id, user_id=borrower.id, quantity=2, purpose="Shoot", expected_return_date=due
    )
    second = await app.transactions.checkout(
        item_id=camera.id, user_id=borrower.id, quantity=2, purpose="Shoot", expected_return_date=due
    )

    result = await app.transactions.bulk_approve([first.id, second.id, first.id, "missing"], admin.id)

    assert sorted(t.id for t in result.approved) == sorted([first.id, second.id])
    assert result.errors == [{"id": "missing", "code": "NOT_FOUND", "message": "Transaction not found"}]
    assert result.success is False
    assert await available(app, camera) == 1


async def test_detail_and_listing(app, admin, borrower, other_user, camera, due, lend):
    mine = await lend(camera, borrower, admin, 1, due)
    await app.transactions.checkout(
        item_id=camera.id, user_id=other_user.id, quantity=1, purpose="Interview", expected_return_date=due
    )

    detail = await app.transactions.get_transaction_detail(mine.id)
    assert detail.transaction.id == mine.id
    assert detail.item["name"] == "DSLR Camera"
    assert detail.user == {"id": borrower.id, "name": "Alice Member", "email": "alice@msa.org", "team": "Robotics"}

    assert [t.id for t in await app.transactions.list_transactions(user_id=borrower.id)] == [mine.id]
    pending = await app.transactions.list_transactions(status="pending")
    assert [t.user_id for t in pending] == [other_user.id]
    assert len(await app.transactions.list_transactions(search="interview")) == 1


async def test_approval_is_undone_when_status_write_outcome_is_unknown(app, admin, borrower, camera, due, storage, monkeypatch):
    transaction = await app.transactions.checkout(
        item_id=camera.id, user_id=borrower.id, quantity=2, purpose="Shoot", expected_return_date=due
    )
    original_update = storage.transactions.update
    calls = []

    async def lands_then_times_out(id, partial):
        calls.append(partial)
        result = await original_update(id, partial)
        if len(calls) == 1:
            raise StorageFailure("Timed out after 0.05s during update on transactions")
        return result

    monkeypatch.setattr(storage.transactions, "update", lands_then_times_out)
    with pytest.raises(StorageFailure) as exc_info:
        await app.transactions.approve(transaction.id, admin.id)
    assert exc_info.value.fatal is False
    monkeypatch.undo()

    restored = await app.transactions.require_transaction(transaction.id)
    assert restored.status == TransactionStatus.PENDING
    assert restored.approved_by is None
    assert await available(app, camera) == 5
    check = await app.items.reconcile(camera.id)
    assert check.consistent


async def test_return_is_undone_when_status_write_outcome_is_unknown(app, admin, borrower, camera, due, storage, clock, lend, monkeypatch):
    transaction = await lend(camera, borrower, admin, 2, due)
    clock.set_time(due + timedelta(days=2))
    original_update = storage.transactions.update
    calls = []

    async def lands_then_fails(id, partial):
        calls.append(partial)
        result = await original_update(id, partial)
        if len(calls) == 1:
            raise StorageFailure("connection reset")
        return result

    monkeypatch.setattr(storage.transactions, "update", lands_then_fails)
    with pytest.raises(StorageFailure):
        await app.transactions.return_item(transaction.id, borrower.id)
    monkeypatch.undo()

    restored = await app.transactions.require_transaction(transaction.id)
    assert restored.status == TransactionStatus.ACTIVE
    assert restored.penalties == []
    assert await available(app, camera) == 3
