import asyncio

from msa_inventory.core.exceptions import StorageFailure
from msa_inventory.models.notification_model import NotificationStatus, NotificationType
from msa_inventory.models.transaction_model import TransactionStatus


async def test_checkout_notifies_approvers_and_requester(app, admin, manager, borrower, camera, due, clock):
    transaction = await app.transactions.checkout(
        item_id=camera.id, user_id=borrower.id, quantity=1, purpose="Shoot", expected_return_date=due
    )
    assert app.notifications.pending == 2

    # one approver fan-out event becomes two notifications
    assert await app.notifications.flush() == 3
    assert app.notifications.pending == 0

    for user in (admin, manager, borrower):
        notifications = await app.notifications.get_notifications_for_user(user.id)
        assert len(notifications) == 1
        notification = notifications[0]
        assert notification.type == NotificationType.APPROVAL_REQUEST
        assert notification.related_transaction == transaction.id
        assert notification.status == NotificationStatus.SENT
        assert notification.sent_at == clock.now()


async def test_approval_and_rejection_notify_borrower(app, admin, borrower, camera, due):
    first = await app.transactions.checkout(
        item_id=camera.id, user_id=borrower.id, quantity=1, purpose="Shoot", expected_return_date=due
    )
    second = await app.transactions.checkout(
        item_id=camera.id, user_id=borrower.id, quantity=1, purpose="Shoot", expected_return_date=due
    )
    await app.transactions.approve(first.id, admin.id)
    await app.transactions.reject(second.id, admin.id, "Duplicate request")
    await app.notifications.flush()

    types = [n.type for n in await app.notifications.get_notifications_for_user(borrower.id)]
    assert types.count(NotificationType.APPROVAL_APPROVED) == 1
    assert types.count(NotificationType.APPROVAL_REJECTED) == 1


async def test_delivery_failure_never_reaches_the_engine(app, admin, borrower, camera, due, storage, monkeypatch):
    async def broken_create(data):
        raise StorageFailure("notifications collection unavailable")

    monkeypatch.setattr(storage.notifications, "create", broken_create)

    transaction = await app.transactions.checkout(
        item_id=camera.id, user_id=borrower.id, quantity=1, purpose="Shoot", expected_return_date=due
    )
    approved = await app.transactions.approve(transaction.id, admin.id)
    assert approved.status == TransactionStatus.ACTIVE

    assert await app.notifications.flush() == 0
    assert app.notifications.pending == 0


async def test_consumer_task_delivers_in_background(app, borrower):
    app.notifications.start()
    try:
        app.notifications.notify(
            borrower.id,
            NotificationType.SYSTEM_ALERT,
            "Maintenance",
            "Storage room closed on Friday",
        )
        await asyncio.wait_for(app.notifications.drain(), timeout=2)
    finally:
        await app.notifications.stop()

    notifications = await app.notifications.get_notifications_for_user(borrower.id)
    assert [n.title for n in notifications] == ["Maintenance"]


async def test_mark_read(app, borrower, clock):
    app.notifications.notify(borrower.id, NotificationType.OTHER, "Hello", "Welcome to the inventory")
    app.notifications.notify(borrower.id, NotificationType.OTHER, "Again", "Second message")
    await app.notifications.flush()

    first, second = await app.notifications.get_notifications_for_user(borrower.id)
    read = await app.notifications.mark_read(first.id)

    assert read.is_read is True
    assert read.status == NotificationStatus.READ
    assert read.read_at == clock.now()
    unread = await app.notifications.get_notifications_for_user(borrower.id, unread_only=True)
    assert [n.id for n in unread] == [second.id]


async def test_approver_fan_out_skips_excluded_and_inactive(app, admin, manager, borrower):
    await app.users.update_user(manager.id, status="suspended")

    app.notifications.notify_approvers(NotificationType.SYSTEM_ALERT, "Audit", "Quarterly audit", exclude=(admin.id,))
    assert await app.notifications.flush() == 0

    app.notifications.notify_approvers(NotificationType.SYSTEM_ALERT, "Audit", "Quarterly audit")
    assert await app.notifications.flush() == 1
    assert len(await app.notifications.get_notifications_for_user(admin.id)) == 1
