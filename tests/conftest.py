from datetime import timedelta

import pytest
from mongomock_motor import AsyncMongoMockClient

from msa_inventory.app import build_application
from msa_inventory.core.clock import DeterministicClock
from msa_inventory.core.config import Settings
from msa_inventory.storage.json_store import JsonFileStorage
from msa_inventory.storage.mongo_store import MongoStorage


@pytest.fixture
def clock():
    return DeterministicClock()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        STORAGE_MODE="json",
        DATA_DIR=str(tmp_path / "data"),
        LOG_FILE=str(tmp_path / "test.log"),
        LATE_FEE_DAILY_RATE=5.0,
        LATE_FEE_CURRENCY="USD",
        REQUIRE_STORAGE_PHOTO=False,
        LOCK_TIMEOUT_SECONDS=5.0,
        DUE_SOON_WINDOW_HOURS=24,
    )


@pytest.fixture(params=["json", "mongodb"])
async def storage(request, tmp_path, clock):
    if request.param == "json":
        backend = JsonFileStorage(tmp_path / "data", clock=clock)
        await backend.connect()
    else:
        backend = MongoStorage(AsyncMongoMockClient(), "msa_inventory_test", clock=clock)
    yield backend


@pytest.fixture
def app(settings, storage, clock):
    return build_application(settings, storage, clock)


@pytest.fixture
async def admin(app):
    return await app.users.create_user(name="Dana Admin", email="dana@msa.org", role="admin")


@pytest.fixture
async def manager(app):
    return await app.users.create_user(name="Max Manager", email="max@msa.org", role="manager", team="Robotics")


@pytest.fixture
async def borrower(app):
    return await app.users.create_user(name="Alice Member", email="alice@msa.org", role="user", team="Robotics")


@pytest.fixture
async def other_user(app):
    return await app.users.create_user(name="Bob Member", email="bob@msa.org", role="user", team="Media")


@pytest.fixture
async def camera(app, admin):
    return await app.items.create_item(
        created_by=admin.id,
        name="DSLR Camera",
        category="Media",
        sku="cam-001",
        total_quantity=5,
    )


@pytest.fixture
def due(clock):
    """Expected return date three days from the test clock's now"""
    return clock.now() + timedelta(days=3)


@pytest.fixture
def lend(app):
    """Checkout followed by approval, returning the active transaction"""
    async def _lend(item, user, approver, quantity, expected_return_date, purpose="Club event"):
        transaction = await app.transactions.checkout(
            item_id=item.id,
            user_id=user.id,
            quantity=quantity,
            purpose=purpose,
            expected_return_date=expected_return_date,
        )
        return await app.transactions.approve(transaction.id, approver.id)
    return _lend
