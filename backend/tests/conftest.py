"""Shared fixtures: an in-memory database, fake provider APIs and a seeded rental."""

import os

# Settings are read at import time by app.main
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("FIREBASE_PROJECT_ID", "test-project")
os.environ.setdefault("PAYMONGO_SECRET_KEY", "sk_test_secret")
os.environ.setdefault("PAYMONGO_PUBLIC_KEY", "pk_test_public")
os.environ.setdefault("PAYMONGO_WEBHOOK_SECRET", "whsk_test_secret")
os.environ.setdefault("PAYPAL_CLIENT_ID", "paypal-client")
os.environ.setdefault("PAYPAL_CLIENT_SECRET", "paypal-secret")
os.environ.setdefault("PAYPAL_WEBHOOK_ID", "WH-TEST-0001")

import uuid
from datetime import date
from decimal import Decimal

import httpx
import pytest
from sqlalchemy import event
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.core.config import Settings
from app.core.database import Base
from app.core.security import AuthenticatedUser
from app.models import Rental, Shop, User
from app.models.enums import UserRole
from app.services.paymongo import PayMongoClient
from app.services.paypal import PayPalClient
from app.services.reconciliation import PaymentReconciler, ProviderClients
from tests.providers import WEBHOOK_SECRET, FakePayMongo, FakePayPal


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        database_url="sqlite+aiosqlite://",
        firebase_project_id="test-project",
        paymongo_secret_key="sk_test_secret",
        paymongo_public_key="pk_test_public",
        paymongo_webhook_secret=WEBHOOK_SECRET,
        paypal_client_id="paypal-client",
        paypal_client_secret="paypal-secret",
        paypal_webhook_id="WH-TEST-0001",
        persistence_retry_base_delay=0,
    )


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    # pysqlite's own transaction handling breaks SAVEPOINT; emit BEGIN ourselves
    @event.listens_for(engine.sync_engine, "connect")
    def _connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def db(engine):
    async with async_sessionmaker(engine, expire_on_commit=False)() as session:
        yield session


@pytest.fixture
def paymongo_api() -> FakePayMongo:
    return FakePayMongo()


@pytest.fixture
def paypal_api() -> FakePayPal:
    return FakePayPal()


@pytest.fixture
def clients(settings, paymongo_api, paypal_api) -> ProviderClients:
    return ProviderClients(
        paymongo=PayMongoClient(settings, transport=paymongo_api.transport),
        paypal=PayPalClient(settings, transport=paypal_api.transport),
    )


@pytest.fixture
def reconciler(db, settings, clients) -> PaymentReconciler:
    return PaymentReconciler(db, settings, clients)


# === Seed data ===

@pytest.fixture
async def owner(db) -> User:
    user = User(
        firebase_uid="owner-uid",
        email="owner@shop.test",
        role=UserRole.SHOP_OWNER,
        payment_details={"method": "gcash", "account_number": "09171234567"},
    )
    db.add(user)
    await db.commit()
    return user


@pytest.fixture
async def shop(db, owner) -> Shop:
    shop = Shop(owner_id=owner.id, name="Cebu Scooter Rentals")
    db.add(shop)
    await db.commit()
    return shop


@pytest.fixture
async def renter(db) -> User:
    user = User(firebase_uid="renter-uid", email="renter@mail.test", role=UserRole.USER)
    db.add(user)
    await db.commit()
    return user


@pytest.fixture
def make_rental(db, shop, renter):
    async def _make(**overrides) -> Rental:
        fields = {
            "vehicle_id": uuid.uuid4(),
            "shop_id": shop.id,
            "user_id": renter.id,
            "customer_name": "Juan dela Cruz",
            "start_date": date(2024, 6, 1),
            "end_date": date(2024, 6, 3),
            "total_price": Decimal("4500.00"),
            "deposit_required": True,
            "deposit_amount": Decimal("300.00"),
        }
        fields.update(overrides)
        rental = Rental(**fields)
        db.add(rental)
        await db.commit()
        return rental

    return _make


@pytest.fixture
async def rental(make_rental) -> Rental:
    return await make_rental()


@pytest.fixture
def renter_user(renter) -> AuthenticatedUser:
    user = AuthenticatedUser(uid=renter.firebase_uid, email=renter.email, email_verified=True)
    user.db_user_id = renter.id
    return user


@pytest.fixture
async def admin_user(db) -> AuthenticatedUser:
    admin = User(firebase_uid="admin-uid", email="ops@rentals.test", role=UserRole.ADMIN)
    db.add(admin)
    await db.commit()
    user = AuthenticatedUser(uid=admin.firebase_uid, email=admin.email, email_verified=True)
    user.db_user_id = admin.id
    user.role = UserRole.ADMIN
    return user


@pytest.fixture
async def app_client(reconciler, renter_user):
    """ASGI client with the reconciler and caller wired to the test session."""
    from app.core.security import get_optional_user, require_registered_user
    from app.main import app
    from app.services.reconciliation import get_reconciler

    app.dependency_overrides[get_reconciler] = lambda: reconciler
    app.dependency_overrides[get_optional_user] = lambda: renter_user
    app.dependency_overrides[require_registered_user] = lambda: renter_user
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()
