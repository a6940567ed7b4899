from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from checkflow.checkin import CheckinService
from checkflow.checkout import CheckoutService
from inventory.materials import MaterialService
from observability import metrics
from state.repository import InMemoryStore
from volunteers.service import VolunteerService


class FakeClock:
    """Manually advanced clock injected into the orchestrators."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, minutes: float = 0, hours: float = 0):
        self.now = self.now + timedelta(minutes=minutes, hours=hours)


@pytest.fixture(autouse=True)
def clean_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def clock():
    return FakeClock(datetime(2025, 1, 5, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def volunteers(store):
    return VolunteerService(store)


@pytest.fixture
def materials(store):
    return MaterialService(store)


@pytest.fixture
def checkin(store, clock):
    return CheckinService(store, clock=clock)


@pytest.fixture
def checkout(store, clock):
    return CheckoutService(store, clock=clock)


@pytest_asyncio.fixture
async def team(volunteers, materials):
    """Volunteer V (midia) plus two available materials, Rádio and Crachá."""
    v = await volunteers.create({"name": "Vitor Alves", "phone": "11987654321", "ministry": "midia"})
    m1 = await materials.create({"name": "Rádio", "type": "radio", "code": "RAD-10"})
    m2 = await materials.create({"name": "Crachá", "type": "cracha"})
    return v, m1, m2
