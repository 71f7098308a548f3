"""
Shared fixtures.

Every service runs on a MemoryStore with a frozen clock and the scripted
FakeGateway, so nothing here touches the network or sleeps.
"""
from datetime import datetime, timedelta, timezone

import pytest

from orderflow.config import Settings
from orderflow.gateway import FakeGateway
from orderflow.models import Branch, BranchType, Driver
from orderflow.services import build_services
from orderflow.store import MemoryStore

START = datetime(2025, 3, 14, 8, 0, tzinfo=timezone.utc)


class FrozenClock:
    def __init__(self, now=START):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def services(store, gateway, clock):
    svc = build_services(Settings.for_testing(), store=store, gateway=gateway, clock=clock)
    svc.repo.commit(
        Branch(branch_id="MAIN", name="Kilimani Main", branch_type=BranchType.MAIN),
        Branch(branch_id="SAT", name="Westlands Drop-off", branch_type=BranchType.SATELLITE,
               main_store_id="MAIN"),
        Driver(driver_id="DRV-1", name="Otieno", branch_id="SAT"),
        Driver(driver_id="DRV-2", name="Wanjiru", branch_id="MAIN"),
        Driver(driver_id="DRV-9", name="Retired", branch_id="MAIN", active=False),
    )
    return svc


@pytest.fixture
def repo(services):
    return services.repo


@pytest.fixture
def make_order(services):
    """Create an order whose garment prices add up to `total`."""

    def make(total=3000, branch_id="MAIN", customer_id="CUST-1", garments=None):
        garments = garments or [{"type": "Shirt", "price": total}]
        return services.lifecycle.create_order(customer_id, branch_id, garments, actor="counter-1")

    return make


@pytest.fixture
def walk(services):
    """Transition an order through each status in turn."""

    def run(order_id, *statuses, actor="staff-1"):
        order = None
        for status in statuses:
            order = services.lifecycle.transition(order_id, status, actor)
        return order

    return run
