"""
Shared fixtures.

Environment variables are set before anything under `app` is imported, since
app.config reads them once at import time.
"""

import os

os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["SECRET_KEY"] = "test-secret-key-for-jwt-signing"
os.environ["ENVIRONMENT"] = "test"
os.environ["NOTIFICATIONS_ENABLED"] = "false"
os.environ["RAZORPAY_KEY_ID"] = "rzp_test_key"
os.environ["RAZORPAY_KEY_SECRET"] = "rzp_test_secret"
os.environ["RAZORPAY_WEBHOOK_SECRET"] = "whsec_test"
os.environ["RAZORPAY_VERIFY_WITH_GATEWAY"] = "true"

from datetime import timedelta
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import app.models  # noqa: F401
from app.api.deps import get_payment_gateway
from app.core.security import Principal, create_access_token
from app.database import Base, get_db
from app.db_types import utc_now
from app.main import app as fastapi_app
from app.models import Coupon, Product, Service
from app.services import cache_service, notification_service
from app.services.razorpay_gateway import compute_signature

KEY_SECRET = "rzp_test_secret"
WEBHOOK_SECRET = "whsec_test"


# ---------------------------------------------------------------------------
# Fake gateway
# ---------------------------------------------------------------------------

class FakeGateway:
    """In-process stand-in for RazorpayGateway."""

    def __init__(self):
        self.key_id = "rzp_test_key"
        self.is_configured = True
        self.orders: List[Dict[str, Any]] = []
        self.refunds: List[Dict[str, Any]] = []
        self.payments: Dict[str, Dict[str, Any]] = {}
        self.payment_status = "captured"
        self.create_error: Optional[Exception] = None
        self.fetch_error: Optional[Exception] = None

    async def create_order(self, amount, currency, receipt, notes=None):
        if self.create_error is not None:
            raise self.create_error
        order = {
            "id": f"order_test{len(self.orders) + 1:04d}",
            "amount": amount,
            "currency": currency,
            "receipt": receipt,
            "notes": notes or {},
        }
        self.orders.append(order)
        return order

    def capture(self, payment_id: str, gateway_order_id: str, amount: int) -> None:
        """Make the gateway report payment_id as captured on gateway_order_id for amount paise."""
        self.payments[payment_id] = {
            "id": payment_id,
            "order_id": gateway_order_id,
            "amount": amount,
            "status": "captured",
        }

    async def fetch_payment(self, payment_id):
        if self.fetch_error is not None:
            raise self.fetch_error
        if payment_id in self.payments:
            return self.payments[payment_id]
        return {"id": payment_id, "status": self.payment_status}

    async def refund_payment(self, payment_id, amount=None, notes=None):
        refund = {
            "id": f"rfnd_test{len(self.refunds) + 1:04d}",
            "payment_id": payment_id,
            "amount": amount,
            "status": "processed",
        }
        self.refunds.append(refund)
        return refund


def sign(gateway_order_id: str, gateway_payment_id: str) -> str:
    """Checkout signature as Razorpay would compute it."""
    return compute_signature(KEY_SECRET, f"{gateway_order_id}|{gateway_payment_id}")


def sign_webhook(body: bytes) -> str:
    return compute_signature(WEBHOOK_SECRET, body)


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def engine():
    """In-memory SQLite engine shared by every session of a test."""
    eng = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture(autouse=True)
def reset_cache():
    """The in-memory cache holds an asyncio.Lock bound to one event loop."""
    cache_service._cache_instance = None
    yield
    cache_service._cache_instance = None


@pytest.fixture(autouse=True)
def notifications(monkeypatch):
    """Capture admin notifications instead of sending email."""
    sent: List[Dict[str, str]] = []

    def capture(subject: str, body: str):
        sent.append({"subject": subject, "body": body})
        return None

    monkeypatch.setattr(notification_service, "notify_admin", capture)
    return sent


@pytest.fixture
def gateway():
    return FakeGateway()


# ---------------------------------------------------------------------------
# App / client
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def app(session_factory, gateway):
    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    fastapi_app.dependency_overrides[get_db] = override_get_db
    fastapi_app.dependency_overrides[get_payment_gateway] = lambda: gateway
    yield fastapi_app
    fastapi_app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


# ---------------------------------------------------------------------------
# Principals
# ---------------------------------------------------------------------------

@pytest.fixture
def user():
    return Principal(user_id="user-1")


@pytest.fixture
def other_user():
    return Principal(user_id="user-2")


@pytest.fixture
def admin():
    return Principal(user_id="admin-1", role="admin")


def auth_headers(principal: Principal) -> Dict[str, str]:
    token = create_access_token(principal.user_id, role=principal.role)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def user_headers(user):
    return auth_headers(user)


@pytest.fixture
def other_headers(other_user):
    return auth_headers(other_user)


@pytest.fixture
def admin_headers(admin):
    return auth_headers(admin)


# ---------------------------------------------------------------------------
# Catalogue
# ---------------------------------------------------------------------------

PRICES = {3: 1000, 6: 1800, 9: 2500, 11: 3000, 12: 3200, 24: 5800}


async def make_product(db: AsyncSession, **overrides) -> Product:
    fields: Dict[str, Any] = {
        "category": "Refrigerator",
        "name": "Double Door Fridge",
        "brand": "LG",
        "model": "GL-T292",
        "type": "Double Door",
        "capacity": "260L",
        "location": "Bangalore",
        "status": "Available",
        "discount": 0,
        **{f"price_{d}": p for d, p in PRICES.items()},
    }
    fields.update(overrides)
    product = Product(**fields)
    db.add(product)
    await db.commit()
    await db.refresh(product)
    return product


async def make_service(db: AsyncSession, **overrides) -> Service:
    fields: Dict[str, Any] = {
        "title": "AC Jet Wash Service",
        "price": 599,
        "category": "AC Jet Wash Service",
    }
    fields.update(overrides)
    service = Service(**fields)
    db.add(service)
    await db.commit()
    await db.refresh(service)
    return service


async def make_coupon(db: AsyncSession, **overrides) -> Coupon:
    now = utc_now()
    fields: Dict[str, Any] = {
        "code": "SAVE20PCT",
        "title": "20% off",
        "type": "percentage",
        "value": 20,
        "max_discount": 150,
        "min_amount": 0,
        "valid_from": now - timedelta(days=1),
        "valid_until": now + timedelta(days=30),
        "usage_count": 0,
        "applicable_categories": [],
        "applicable_durations": [],
        "is_active": True,
    }
    fields.update(overrides)
    coupon = Coupon(**fields)
    db.add(coupon)
    await db.commit()
    await db.refresh(coupon)
    return coupon


@pytest_asyncio.fixture
async def fridge(db):
    return await make_product(db)


@pytest_asyncio.fixture
async def split_ac(db):
    return await make_product(
        db,
        category="AC",
        name="1.5 Ton Split AC",
        brand="Voltas",
        type="Split",
        capacity="1.5 Ton",
        installation_charges={"amount": 1500, "includedItems": ["3m copper pipe"]},
        monthly_payment_enabled=True,
        monthly_price=1200,
        security_deposit=2000,
    )


@pytest_asyncio.fixture
async def jet_wash(db):
    return await make_service(db)


def rental_item(product: Product, duration: int = 3, price: Optional[float] = None, **extra) -> Dict[str, Any]:
    item: Dict[str, Any] = {
        "type": "rental",
        "productId": str(product.id),
        "duration": duration,
        "price": PRICES[duration] if price is None else price,
    }
    item.update(extra)
    return item
