"""
Pytest configuration and fixtures for tenant manager tests
"""

import os
import sys
from collections.abc import AsyncGenerator
from pathlib import Path

# Settings are read at import time
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-signing-session-tokens")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("EMAIL_ENABLED", "false")
os.environ.setdefault("LOG_JSON", "false")
os.environ.setdefault("ADMIN_API_TOKEN", "test-admin-token")
os.environ.setdefault("COMMERCE_WEBHOOK_SECRET", "test-webhook-secret")

import pytest  # noqa: E402
from fastapi import Depends  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))  # noqa: PTH100, PTH118, PTH120

from tenant_manager import models  # noqa: E402, F401
from tenant_manager.database import Base, get_db  # noqa: E402
from tenant_manager.exceptions import ProvisioningError  # noqa: E402
from tenant_manager.services.commerce_client import CommerceClient, Order, Subscription  # noqa: E402
from tenant_manager.services.database_provisioner import (  # noqa: E402
    DatabaseCredentials,
    DatabaseProvisioner,
    backup_filename,
    credential_username,
)
from tenant_manager.services.module_service import ModuleService  # noqa: E402
from tenant_manager.services.notification_service import NotificationService  # noqa: E402
from tenant_manager.services.tenant_service import TenantService  # noqa: E402
from tenant_manager.services.tenant_validator import TenantInput  # noqa: E402

STRONG_PASSWORD = "Sup3r$ecurePass!"


# ── Fakes ──────────────────────────────────────────────────────────────────────


class FakeProvisioner(DatabaseProvisioner):
    """In-memory provisioner; flip the fail_* flags to simulate outages."""

    def __init__(self):
        self.databases: set[str] = set()
        self.create_calls = 0
        self.destroyed: list[str] = []
        self.backups: list[Path] = []
        self.fail_create = False
        self.fail_destroy = False
        self.fail_backup = False

    async def create_database(self, name: str, username: str | None = None) -> DatabaseCredentials:
        self.create_calls += 1
        if self.fail_create:
            raise ProvisioningError("could not connect to database server", step="create_database")
        self.databases.add(name)
        return DatabaseCredentials(
            database=name,
            username=username or credential_username(name),
            password="p" * 32,
            host="localhost",
            port=5432,
        )

    async def destroy_database(self, name: str, username: str | None = None) -> bool:
        if self.fail_destroy:
            raise ProvisioningError("database is being accessed by other users", step="destroy_database")
        self.databases.discard(name)
        self.destroyed.append(name)
        return True

    async def backup(self, name: str) -> Path:
        if self.fail_backup:
            raise ProvisioningError("pg_dump not found", step="backup")
        path = Path("backups") / backup_filename(name)
        self.backups.append(path)
        return path

    async def size(self, name: str) -> int:
        return 4096 if name in self.databases else 0

    async def database_exists(self, name: str) -> bool:
        return name in self.databases


class FakeNotifier(NotificationService):
    def __init__(self):
        super().__init__(enabled=False)
        self.sent: list[tuple[str, str, dict]] = []

    async def send(self, event_type: str, recipient: str | None, template_data: dict) -> bool:
        self.sent.append((event_type, recipient, template_data))
        return True

    def events(self) -> list[str]:
        return [event for event, _, _ in self.sent]


class FakeCommerceClient(CommerceClient):
    def __init__(self):
        self.orders: dict[str, Order] = {}
        self.subscriptions: dict[str, Subscription] = {}

    async def get_order(self, order_id: str) -> Order | None:
        return self.orders.get(str(order_id))

    async def get_subscription(self, subscription_id: str) -> Subscription | None:
        return self.subscriptions.get(str(subscription_id))

    async def subscriptions_for_order(self, order_id: str) -> list[Subscription]:
        return [s for s in self.subscriptions.values() if s.parent_order_id == str(order_id)]


# ── Database ───────────────────────────────────────────────────────────────────


@pytest.fixture
async def test_engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(test_engine, class_=AsyncSession, autoflush=False, expire_on_commit=False)


@pytest.fixture
async def test_db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


# ── Collaborators ──────────────────────────────────────────────────────────────


@pytest.fixture
def provisioner():
    return FakeProvisioner()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def commerce():
    return FakeCommerceClient()


@pytest.fixture(autouse=True)
def patch_provisioner(monkeypatch, provisioner):
    """Services built without an explicit provisioner (routes, scheduler) get the fake."""
    monkeypatch.setattr("tenant_manager.services.tenant_service.get_provisioner", lambda: provisioner)


@pytest.fixture
def tenant_service(test_db, provisioner, notifier) -> TenantService:
    return TenantService(test_db, provisioner=provisioner, notifier=notifier)


@pytest.fixture
def module_service(test_db) -> ModuleService:
    return ModuleService(test_db, grace_days=7)


def tenant_input(username: str = "acme01", **overrides) -> TenantInput:
    values = {
        "username": username,
        "email": f"{username}@acmecorp.com",
        "password": STRONG_PASSWORD,
        "full_name": "Acme Owner",
        "company_name": "Acme Corp",
        "phone_number": "+1 555 010 2030",
    }
    values.update(overrides)
    return TenantInput(**values)


@pytest.fixture
def make_tenant(tenant_service):
    async def _make(username: str = "acme01", provision: bool = False, **overrides):
        tenant = await tenant_service.create_tenant(tenant_input(username, **overrides), auto_provision=False)
        if provision:
            tenant = await tenant_service.provision_tenant(tenant.id)
        return tenant

    return _make


@pytest.fixture
def make_module(module_service):
    async def _make(slug: str = "crm", product_id: int | None = None, **overrides):
        data = {"name": slug.upper(), "slug": slug, "path": f"modules/{slug}/{slug}.php", "product_id": product_id}
        data.update(overrides)
        return await module_service.register_module(data)

    return _make


# ── HTTP ───────────────────────────────────────────────────────────────────────


@pytest.fixture
async def client(session_factory, commerce, notifier) -> AsyncGenerator[AsyncClient, None]:
    from main import app
    from tenant_manager.routes.events import get_order_event_service
    from tenant_manager.services.order_event_service import OrderEventService

    async def _override_get_db():
        async with session_factory() as session:
            yield session

    async def _override_event_service(db: AsyncSession = Depends(get_db)):
        return OrderEventService(db, commerce_client=commerce, notifier=notifier)

    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_order_event_service] = _override_event_service
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers() -> dict:
    return {"X-Admin-Token": "test-admin-token"}


@pytest.fixture
def make_input():
    return tenant_input


@pytest.fixture
def strong_password() -> str:
    return STRONG_PASSWORD
