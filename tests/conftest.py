"""
Shared fixtures.

Every test gets fresh settings (development mode, fast retries) and empty
factory caches, so no state leaks between tests through the lru_cache'd
singletons.
"""

from decimal import Decimal
from typing import Any, Optional

import pytest

from order_engine.core.config import Settings, get_settings
from order_engine.core.permissions import Role
from order_engine.services.auth import MockIdentityProvider, reset_identity_provider
from order_engine.services.auth.base import Identity
from order_engine.services.menu import StaticMenuCatalog, reset_menu_catalog
from order_engine.services.orders import reset_order_store
from order_engine.services.orders.entities import OrderItem
from order_engine.services.orders.store import OrderStore
from order_engine.services.persistence import InMemoryOrderRepository, reset_order_repository
from order_engine.services.realtime import LocalBroadcaster, SessionTracker, reset_realtime
from order_engine.services.realtime.gateway import EventGateway, reset_event_gateway


DEV_TOKENS = {
    "dev-admin": ("admin-001", "admin", "Gerente General"),
    "dev-staff": ("personal-001", "personal", "Personal de Caja"),
}

ADMIN = Identity(user_id="admin-001", role=Role.ADMIN, name="Gerente General")
STAFF = Identity(user_id="personal-001", role=Role.PERSONAL, name="Personal de Caja")


def reset_all() -> None:
    get_settings.cache_clear()
    reset_order_repository()
    reset_realtime()
    reset_identity_provider()
    reset_menu_catalog()
    reset_order_store()
    reset_event_gateway()


@pytest.fixture(autouse=True)
def fresh_environment(monkeypatch):
    monkeypatch.setenv("ENV_MODE", "development")
    monkeypatch.setenv("PERSISTENCE_MAX_TRIES", "3")
    monkeypatch.setenv("PERSISTENCE_MAX_BACKOFF_SECONDS", "0.01")
    reset_all()
    yield
    reset_all()


@pytest.fixture
def settings() -> Settings:
    return get_settings()


@pytest.fixture
def repository() -> InMemoryOrderRepository:
    return InMemoryOrderRepository()


@pytest.fixture
async def broadcaster():
    broadcaster = LocalBroadcaster()
    yield broadcaster
    await broadcaster.stop()


@pytest.fixture
def store(repository, broadcaster, settings) -> OrderStore:
    return OrderStore(repository, broadcaster, settings)


@pytest.fixture
def identity_provider() -> MockIdentityProvider:
    return MockIdentityProvider(DEV_TOKENS)


@pytest.fixture
async def tracker(broadcaster, identity_provider):
    tracker = SessionTracker(broadcaster, identity_provider, timeout_seconds=300, sweep_interval_seconds=300)
    yield tracker
    await tracker.stop()


@pytest.fixture
def catalog() -> StaticMenuCatalog:
    return StaticMenuCatalog()


@pytest.fixture
def gateway(store, tracker, catalog, settings) -> EventGateway:
    return EventGateway(store, tracker, catalog, settings)


class FakeConnection:
    """Stands in for a WebSocket; records frames and can be made to fail."""

    def __init__(self, fail: bool = False):
        self.sent: list[dict] = []
        self.closed: Optional[tuple[int, Optional[str]]] = None
        self.fail = fail

    async def send_json(self, data: Any) -> None:
        if self.fail:
            raise ConnectionError("socket gone")
        self.sent.append(data)

    async def close(self, code: int = 1000, reason: Optional[str] = None) -> None:
        self.closed = (code, reason)

    def events(self, name: Optional[str] = None) -> list[dict]:
        return [frame for frame in self.sent if name is None or frame.get("event") == name]


@pytest.fixture
def connection() -> FakeConnection:
    return FakeConnection()


def item(name: str = "Salchipapa Clásica", price: str = "10.00", quantity: int = 1,
         category: str = "salchipapas") -> OrderItem:
    return OrderItem(name=name, price=Decimal(price), quantity=quantity, category=category)
