from __future__ import annotations

import hashlib
import hmac
import json
import os
import time
from datetime import timedelta
from decimal import Decimal

# settings are read at import time
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_fake")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("ORDER_SWEEP_ENABLED", "false")
os.environ.setdefault("FRONTEND_URL", "http://frontend.test")

import httpx
import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

import app.models  # noqa: F401
from app.core.config import settings
from app.core.db import Base, get_db
from app.core.deps import get_gateway
from app.core.errors import NotFoundError
from app.core.security import create_access_token
from app.integrations.stripe_gateway import CheckoutSession, PaymentIntent, StripeGateway
from app.main import app as fastapi_app
from app.models._time import utcnow
from app.models.course import Category, Course
from app.models.discount import PERCENTAGE, DiscountCode
from app.models.user import User


class FakeGateway(StripeGateway):
    """
    Keeps the real webhook signature check; replaces everything that would hit
    the network with an in-memory record of sessions and intents.
    """

    def __init__(self):
        super().__init__(
            api_key="sk_test_fake",
            webhook_secret=settings.STRIPE_WEBHOOK_SECRET,
            currency=settings.PAYMENT_CURRENCY,
        )
        self.sessions: dict[str, CheckoutSession] = {}
        self.intents: dict[str, PaymentIntent] = {}
        self.created: list[dict] = []
        self.fail_next: Exception | None = None
        self.online = True

    def _maybe_fail(self):
        if self.fail_next is not None:
            e, self.fail_next = self.fail_next, None
            raise e

    async def create_checkout_session(self, *, line_item, success_url, cancel_url, metadata, idempotency_key=None):
        self._maybe_fail()
        session_id = f"cs_test_{len(self.sessions) + 1}"
        self.created.append(
            {
                "line_item": line_item,
                "success_url": success_url,
                "cancel_url": cancel_url,
                "metadata": dict(metadata),
                "idempotency_key": idempotency_key,
            }
        )
        session = CheckoutSession(
            id=session_id,
            url=f"https://checkout.stripe.test/{session_id}",
            payment_status="unpaid",
            status="open",
            amount_total_cents=line_item.amount_cents,
            currency=line_item.currency,
            metadata=dict(metadata),
        )
        self.sessions[session_id] = session
        return session

    async def retrieve_session(self, session_id):
        self._maybe_fail()
        if session_id not in self.sessions:
            raise NotFoundError("Payment record not found at provider.")
        return self.sessions[session_id]

    async def create_payment_intent(self, *, amount_cents, metadata, idempotency_key=None):
        self._maybe_fail()
        intent_id = f"pi_test_{len(self.intents) + 1}"
        intent = PaymentIntent(
            id=intent_id,
            status="requires_payment_method",
            client_secret=f"{intent_id}_secret",
            amount_cents=amount_cents,
            currency=self.currency,
            metadata=dict(metadata),
        )
        self.intents[intent_id] = intent
        return intent

    async def retrieve_payment_intent(self, intent_id):
        self._maybe_fail()
        if intent_id not in self.intents:
            raise NotFoundError("Payment record not found at provider.")
        return self.intents[intent_id]

    async def ping(self):
        return self.online

    # test helpers
    def pay(self, session_id: str) -> CheckoutSession:
        session = self.sessions[session_id]
        session.payment_status = "paid"
        session.status = "complete"
        session.payment_intent = f"pi_for_{session_id}"
        return session

    def succeed_intent(self, intent_id: str) -> PaymentIntent:
        intent = self.intents[intent_id]
        intent.status = "succeeded"
        return intent


def sign_payload(payload: bytes, secret: str | None = None, timestamp: int | None = None) -> str:
    secret = secret or settings.STRIPE_WEBHOOK_SECRET
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.".encode() + payload
    sig = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={sig}"


def session_event(session: CheckoutSession, event_type: str = "checkout.session.completed", event_id: str = "evt_1") -> bytes:
    return json.dumps(
        {
            "id": event_id,
            "object": "event",
            "type": event_type,
            "data": {
                "object": {
                    "id": session.id,
                    "object": "checkout.session",
                    "payment_status": session.payment_status,
                    "status": session.status,
                    "payment_intent": session.payment_intent,
                    "amount_total": session.amount_total_cents,
                    "currency": session.currency,
                    "metadata": session.metadata,
                }
            },
        }
    ).encode()


def auth_headers(user: User) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(user_id=int(user.id), role=user.role)}"}


async def count_rows(db: AsyncSession, model, *where) -> int:
    stmt = select(func.count()).select_from(model)
    if where:
        stmt = stmt.where(*where)
    return int((await db.execute(stmt)).scalar_one())


@pytest.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    await engine.dispose()


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
async def client(session_factory, gateway):
    async def _get_db():
        async with session_factory() as session:
            yield session

    fastapi_app.dependency_overrides[get_db] = _get_db
    fastapi_app.dependency_overrides[get_gateway] = lambda: gateway

    transport = httpx.ASGITransport(app=fastapi_app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c

    fastapi_app.dependency_overrides.clear()


@pytest.fixture
async def seed(db):
    """Two students, an admin, a paid $50 course, a second paid course, a free course, SAVE10."""
    alice = User(email="alice@example.com", name="Alice", role="USER")
    bob = User(email="bob@example.com", name="Bob", role="USER")
    admin = User(email="admin@example.com", name="Admin", role="ADMIN")
    web = Category(name="Web")
    data = Category(name="Data")
    db.add_all([alice, bob, admin, web, data])
    await db.flush()

    course = Course(title="FastAPI in Depth", price_cents=5000, is_paid=True, category_id=web.id)
    other = Course(title="Pandas Basics", price_cents=10000, is_paid=True, category_id=data.id)
    free = Course(title="Intro to Git", price_cents=0, is_paid=False, category_id=web.id)
    db.add_all([course, other, free])
    await db.flush()

    save10 = DiscountCode(
        code="SAVE10",
        type=PERCENTAGE,
        value=Decimal("10"),
        max_uses=100,
        max_uses_per_user=1,
        used_count=0,
        min_purchase_cents=0,
        applicable_to_type="ALL",
        is_active=True,
        created_by=None,
    )
    db.add(save10)
    await db.commit()

    return {
        "alice": alice,
        "bob": bob,
        "admin": admin,
        "course": course,
        "other": other,
        "free": free,
        "save10": save10,
        "web": web,
        "data": data,
    }


@pytest.fixture
def minutes_ago():
    def _at(minutes: int):
        return utcnow() - timedelta(minutes=minutes)

    return _at
