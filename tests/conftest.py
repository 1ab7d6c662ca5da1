"""Test fixtures."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from returnflow.api import deps
from returnflow.config import ReturnPolicy
from returnflow.main import app
from returnflow.schemas import (
    PICKUP_SLOTS, Actor, DeliveryOtp, Order, OrderLine, OrderStatus, ReturnDraft, ReturnDraftItem,
    Role, Wallet,
)
from returnflow.services.auth import token_for
from returnflow.services.notification import NotificationService
from returnflow.services.store import InMemoryStore

DELIVERED_AT = datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)
OTP_CODE = "123456"

CUSTOMER = Actor(id="cust-1", role=Role.CUSTOMER)
ADMIN = Actor(id="admin-1", role=Role.ADMIN)
MANAGER = Actor(id="wh-1", role=Role.WAREHOUSE)
AGENT = Actor(id="agent-1", role=Role.AGENT)


class FakeClock:
    def __init__(self, now: datetime):
        self.current = now

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


def make_order(order_id: str = "order-1", customer_id: str = "cust-1", **overrides) -> Order:
    defaults = dict(
        id=order_id,
        customer_id=customer_id,
        status=OrderStatus.DELIVERED,
        delivered_at=DELIVERED_AT,
        lines=[
            OrderLine(id="line-1", product_id="p-1", name="Desk Lamp", unit_price=Decimal("200"), quantity=1),
            OrderLine(id="line-2", product_id="p-2", name="Shade", unit_price=Decimal("200"), quantity=1),
        ],
        otp=DeliveryOtp(code=OTP_CODE, generated_at=DELIVERED_AT - timedelta(hours=2)),
    )
    defaults.update(overrides)
    return Order(**defaults)


def make_draft(order_id: str = "order-1", reason: str = "defective", **overrides) -> ReturnDraft:
    defaults = dict(
        order_id=order_id,
        reason=reason,
        items=[ReturnDraftItem(order_line_id="line-1"), ReturnDraftItem(order_line_id="line-2")],
        customer_comments="Lamp flickers",
        evidence_images=["uploads/lamp-1.jpg"],
    )
    defaults.update(overrides)
    return ReturnDraft(**defaults)


@pytest.fixture
def clock():
    return FakeClock(DELIVERED_AT + timedelta(days=2))


@pytest.fixture
def policy():
    return ReturnPolicy()


@pytest.fixture
def notifier():
    return NotificationService()


@pytest.fixture
def store():
    store = InMemoryStore()
    store.add_order(make_order())
    store.add_wallet(Wallet(user_id="cust-1"))
    return store


@pytest.fixture
def wf(store, policy, notifier, clock):
    return deps.build_workflows(store=store, policy=policy, notifier=notifier, clock=clock)


def schedule(wf, return_id: str, clock, agent_id: str = "agent-1"):
    return wf.warehouse.schedule_pickup(
        MANAGER, return_id,
        method="agent_assigned",
        scheduled_date=clock() + timedelta(days=1),
        scheduled_slot=PICKUP_SLOTS[0],
        agent_id=agent_id,
    )


def drive_to_quality_checked(
    wf, clock, reason: str = "defective", eligibility: str = "partial", percentage=80, order_id: str = "order-1",
):
    """Create a return and take it through pickup and inspection."""
    ret = wf.customer.create_return(CUSTOMER.id, make_draft(order_id, reason=reason))
    wf.admin.review(ADMIN, ret.id, "approve")
    schedule(wf, ret.id, clock)
    wf.agent.verify_pickup_otp(AGENT, ret.id, OTP_CODE)
    wf.warehouse.mark_received(MANAGER, ret.id, initial_condition="boxed")
    return wf.warehouse.assess_quality(MANAGER, ret.id, "good", eligibility, percentage)


@pytest.fixture
def app_workflows(store, policy, notifier, clock):
    yield deps.configure(store=store, policy=policy, notifier=notifier, clock=clock)
    deps._workflows = None


def auth_headers(actor: Actor) -> dict:
    return {"Authorization": f"Bearer {token_for(actor.id, actor.role)}"}


@pytest_asyncio.fixture
async def client(app_workflows) -> AsyncGenerator[AsyncClient, None]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
