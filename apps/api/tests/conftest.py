import json
from datetime import datetime, timezone
from typing import Dict, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from database import Base, get_db
from main import app
from routers import rate_limit
from services.session_token import create_session_token
from services.stripe_gateway import (
    CheckoutSessionInfo,
    PaymentGatewayError,
    WebhookEvent,
    WebhookSignatureError,
    get_payment_gateway,
    session_from_payload,
)


T0 = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
VALID_SIGNATURE = "t=1,v1=fake"


def auth_header(user_id: str, email: Optional[str] = None) -> Dict[str, str]:
    token = create_session_token(user_id, email)["token"]
    return {"Authorization": f"Bearer {token}"}


class FakeGateway:
    """In-memory stand-in for the Stripe adapter."""

    def __init__(self):
        self.sessions: Dict[str, CheckoutSessionInfo] = {}
        self.created = []
        self.unavailable = False
        self.retrieve_calls = 0

    def add_session(
        self,
        session_id: str,
        *,
        user_id: str,
        credits: int,
        validity_days: int,
        plan_id: str = "premium",
        payment_status: str = "paid",
        amount_total: int = 1990,
    ) -> CheckoutSessionInfo:
        info = CheckoutSessionInfo(
            id=session_id,
            payment_status=payment_status,
            url=f"https://checkout.stripe.test/{session_id}",
            metadata={
                "userId": user_id,
                "planId": plan_id,
                "credits": str(credits),
                "validityDays": str(validity_days),
            },
            payment_intent=f"pi_{session_id}",
            amount_total=amount_total,
        )
        self.sessions[session_id] = info
        return info

    async def create_checkout_session(self, **kwargs) -> CheckoutSessionInfo:
        self.created.append(kwargs)
        session_id = f"cs_test_{len(self.created)}"
        return self.add_session(
            session_id,
            user_id=kwargs["user_id"],
            credits=kwargs["credits"],
            validity_days=kwargs["validity_days"],
            plan_id=kwargs["plan_id"],
            payment_status="unpaid",
            amount_total=kwargs["price"],
        )

    async def retrieve_checkout_session(self, session_id: str) -> CheckoutSessionInfo:
        self.retrieve_calls += 1
        if self.unavailable or session_id not in self.sessions:
            raise PaymentGatewayError("stripe unreachable")
        return self.sessions[session_id]

    def parse_webhook(self, payload: bytes, signature: str) -> WebhookEvent:
        if signature != VALID_SIGNATURE:
            raise WebhookSignatureError("No signatures found matching the expected signature")
        event = json.loads(payload.decode("utf-8"))
        return WebhookEvent(type=event["type"], session=session_from_payload(event["data"]["object"]))


def checkout_event(session: CheckoutSessionInfo, event_type: str = "checkout.session.completed") -> bytes:
    return json.dumps(
        {
            "id": f"evt_{session.id}",
            "type": event_type,
            "data": {
                "object": {
                    "id": session.id,
                    "object": "checkout.session",
                    "payment_status": session.payment_status,
                    "metadata": session.metadata,
                    "payment_intent": session.payment_intent,
                    "amount_total": session.amount_total,
                }
            },
        }
    ).encode("utf-8")


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    db_path = tmp_path / "ledger.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield maker
    await engine.dispose()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest_asyncio.fixture
async def api_client(session_maker, gateway):
    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.pop(get_db, None)
    app.dependency_overrides.pop(get_payment_gateway, None)
