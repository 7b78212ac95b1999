from decimal import Decimal

import pytest

from database import MemoryStore
from identity import AdminIdentity, UserIdentity
from lifecycle import APPROVE, LifecycleEngine

IPHONE = {
    "productName": "iPhone 12",
    "productType": "phone",
    "quantity": 1,
    "estimatedPrice": 200,
}


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def engine(store):
    return LifecycleEngine(store)


@pytest.fixture
def admin():
    return AdminIdentity()


@pytest.fixture
def owner():
    return UserIdentity(id="user-1", role="individual")


@pytest.fixture
def recycler_a():
    return UserIdentity(id="recycler-a", role="recycler")


@pytest.fixture
def recycler_b():
    return UserIdentity(id="recycler-b", role="recycler")


@pytest.fixture
def make_approved(engine, owner, admin):
    """Submit and approve a request, returning its id."""
    def _make(price=200, **overrides):
        details = dict(IPHONE, estimatedPrice=Decimal(str(price)), **overrides)
        request = engine.submit(owner, details)
        engine.review(admin, request["id"], APPROVE)
        return request["id"]
    return _make
