import asyncio

import pytest

from msa_inventory.core.exceptions import NotFound, PermissionDenied, StateConflict, ValidationError
from msa_inventory.models.guest_request_model import GuestRequestStatus
from msa_inventory.models.user_model import UserRole


async def test_permissions_follow_role(admin, manager, borrower):
    assert admin.permissions.can_manage_users is True
    assert manager.permissions.can_approve is True
    assert manager.permissions.can_manage_users is False
    assert borrower.permissions.can_checkout is True
    assert borrower.permissions.can_approve is False


async def test_duplicate_email_is_rejected(app, borrower):
    with pytest.raises(ValidationError):
        await app.users.create_user(name="Alice Again", email="ALICE@msa.org")


async def test_invalid_email_is_rejected(app):
    with pytest.raises(ValidationError):
        await app.users.create_user(name="Nobody", email="not-an-email")


async def test_lookup_and_listing(app, admin, manager, borrower, other_user):
    assert (await app.users.get_user_by_email("Alice@MSA.org")).id == borrower.id
    assert sorted(u.name for u in await app.users.get_all_users(team="Robotics")) == ["Alice Member", "Max Manager"]
    assert sorted(u.id for u in await app.users.get_approvers()) == sorted([admin.id, manager.id])


async def test_role_change_resets_permissions(app, borrower):
    promoted = await app.users.update_user(borrower.id, role="manager")

    assert promoted.role == UserRole.MANAGER
    assert promoted.permissions.can_approve is True


async def test_inactive_user_cannot_act(app, admin, borrower, camera, due):
    await app.users.update_user(borrower.id, status="suspended")

    with pytest.raises(PermissionDenied):
        await app.transactions.checkout(
            item_id=camera.id, user_id=borrower.id, quantity=1, purpose="Shoot", expected_return_date=due
        )


async def test_guest_request_flow(app, admin, camera):
    submitted = await app.guest_requests.submit(
        team="Robotics",
        name="Visiting Judge",
        email="judge@msa.org",
        purpose="Competition judging",
        item_id=camera.id,
        item_name=camera.name,
    )
    assert submitted.status == GuestRequestStatus.PENDING
    assert submitted.requester.email == "judge@msa.org"

    assert [r.id for r in await app.guest_requests.list_for_team("Robotics")] == [submitted.id]
    assert await app.guest_requests.list_for_team("Media") == []
    assert len(await app.guest_requests.list_for_team("")) == 1

    approved = await app.guest_requests.approve(submitted.id, admin.id)
    assert approved.status == GuestRequestStatus.APPROVED
    assert approved.reviewed_by == admin.id

    with pytest.raises(StateConflict):
        await app.guest_requests.reject(submitted.id, admin.id, "Changed my mind")


async def test_guest_request_review_rules(app, admin, borrower):
    submitted = await app.guest_requests.submit(
        team="Media", name="Parent Volunteer", email="parent@msa.org", purpose="School play"
    )

    with pytest.raises(PermissionDenied):
        await app.guest_requests.approve(submitted.id, borrower.id)
    with pytest.raises(ValidationError):
        await app.guest_requests.reject(submitted.id, admin.id, "")
    with pytest.raises(NotFound):
        await app.guest_requests.approve("missing", admin.id)

    rejected = await app.guest_requests.reject(submitted.id, admin.id, "No spare equipment")
    assert rejected.status == GuestRequestStatus.REJECTED
    assert rejected.rejection_reason == "No spare equipment"


async def test_guest_request_needs_known_item(app):
    with pytest.raises(NotFound):
        await app.guest_requests.submit(
            team="Media", name="Guest", email="guest@msa.org", purpose="Event", item_id="missing"
        )
    with pytest.raises(ValidationError):
        await app.guest_requests.submit(team="", name="Guest", email="guest@msa.org", purpose="Event")


async def test_concurrent_reviews_of_a_guest_request(app, admin, manager):
    submitted = await app.guest_requests.submit(
        team="Robotics", name="Visiting Judge", email="judge@msa.org", purpose="Competition judging"
    )

    results = await asyncio.gather(
        app.guest_requests.approve(submitted.id, admin.id),
        app.guest_requests.reject(submitted.id, manager.id, "Already lent out"),
        return_exceptions=True,
    )

    conflicts = [r for r in results if isinstance(r, StateConflict)]
    reviewed = [r for r in results if not isinstance(r, Exception)]
    assert len(conflicts) == 1
    assert len(reviewed) == 1
    assert (await app.guest_requests.get_request(submitted.id)).status == reviewed[0].status
