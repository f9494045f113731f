"""Tests for billing routes and deferred action replay."""

from datetime import UTC, datetime
from unittest.mock import AsyncMock

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy import func, select

from reconciler.api.routes.billing import get_customer_reconciler, router
from reconciler.core.auth import SessionUser, require_auth
from reconciler.core.exceptions import TransientExternalFailure
from reconciler.db.models.billing_customer import BillingCustomer, CreationState, PendingAction
from reconciler.db.models.membership import Membership
from reconciler.integrations.ledger import LedgerClient
from reconciler.services.customer_service import CustomerReconciler

pytestmark = pytest.mark.integration


# ==================== FIXTURES ====================


@pytest.fixture
def ledger():
    ledger = AsyncMock(spec=LedgerClient)
    ledger.create_customer.return_value = {"id": "user_1"}
    ledger.create_portal.return_value = {"url": "https://billing.test/portal"}
    ledger.create_checkout.return_value = {"url": "https://billing.test/checkout"}
    ledger.track_usage.return_value = None
    return ledger


@pytest.fixture
def app(session_factory, ledger):
    app = FastAPI()
    app.include_router(router, prefix="/api/billing")

    async def override_require_auth():
        return SessionUser(user_id="user_1", claims={"email": "dev@example.test", "name": "Dev"})

    app.dependency_overrides[require_auth] = override_require_auth
    app.dependency_overrides[get_customer_reconciler] = lambda: CustomerReconciler(session_factory, ledger=ledger)
    return app


@pytest.fixture
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


async def add_present_customer(session_factory):
    async with session_factory() as session:
        session.add(
            BillingCustomer(
                user_id="user_1",
                external_customer_id="user_1",
                creation_state=CreationState.PRESENT.value,
            )
        )
        await session.commit()


# ==================== ACTIONS ====================


async def test_portal_before_customer_exists_is_deferred_then_replayed(client, session_factory, ledger):
    response = await client.post("/api/billing/portal")

    assert response.status_code == 200
    assert response.json()["status"] == "deferred"
    # The background task has created the customer and replayed the action
    ledger.create_customer.assert_awaited_once_with("user_1", email="dev@example.test", name="Dev")
    ledger.create_portal.assert_awaited_once_with("user_1")
    async with session_factory() as session:
        customer = await session.get(BillingCustomer, "user_1")
        pending = (await session.execute(select(func.count()).select_from(PendingAction))).scalar_one()
    assert customer.creation_state == CreationState.PRESENT
    assert pending == 0


async def test_portal_with_customer_completes(client, session_factory, ledger):
    await add_present_customer(session_factory)

    response = await client.post("/api/billing/portal")

    assert response.json() == {
        "status": "completed",
        "action_type": "portal",
        "data": {"url": "https://billing.test/portal"},
    }
    ledger.create_customer.assert_not_awaited()


async def test_usage_is_tracked(client, session_factory, ledger):
    await add_present_customer(session_factory)

    response = await client.post("/api/billing/usage", json={"event": "bounty_posted", "metadata": {"bounty_id": "b_1"}})

    assert response.status_code == 200
    ledger.track_usage.assert_awaited_once_with("user_1", "bounty_posted", {"bounty_id": "b_1"})


async def test_checkout_rejects_unknown_plan(client):
    response = await client.post("/api/billing/checkout", json={"plan_slug": "tier_9_unlimited"})

    assert response.status_code == 400


async def test_checkout_passes_user_metadata(client, session_factory, ledger):
    await add_present_customer(session_factory)

    response = await client.post("/api/billing/checkout", json={"plan_slug": "tier_2_pro"})

    assert response.json()["data"] == {"checkout_url": "https://billing.test/checkout"}
    kwargs = ledger.create_checkout.await_args
    assert kwargs.args[1] == "tier_2_pro"
    assert kwargs.kwargs["metadata"] == {"user_id": "user_1", "plan_slug": "tier_2_pro"}


async def test_ledger_outage_returns_503(client, session_factory, ledger):
    await add_present_customer(session_factory)
    ledger.create_portal.side_effect = TransientExternalFailure("ledger", "HTTP 503")

    response = await client.post("/api/billing/portal")

    assert response.status_code == 503


# ==================== CUSTOMER ====================


async def test_ensure_customer_creates_once(client, ledger):
    first = await client.post("/api/billing/customer")
    second = await client.post("/api/billing/customer")

    assert first.json()["creation_state"] == "present"
    assert second.json()["external_customer_id"] == "user_1"
    assert ledger.create_customer.await_count == 1


async def test_ensure_customer_failure_leaves_it_absent(client, session_factory, ledger):
    ledger.create_customer.side_effect = TransientExternalFailure("ledger", "timed out")

    response = await client.post("/api/billing/customer")

    assert response.status_code == 503
    async with session_factory() as session:
        customer = await session.get(BillingCustomer, "user_1")
    assert customer.creation_state == CreationState.ABSENT


# ==================== MEMBERSHIP ====================


async def test_membership_when_none(client):
    response = await client.get("/api/billing/membership")

    assert response.json() == {"status": "none", "plan_tier": None, "current_period_end": None, "has_access": False}


async def test_canceled_membership_keeps_access_until_period_end(client, session_factory):
    async with session_factory() as session:
        session.add(
            Membership(
                user_id="user_1",
                external_subscription_id="sub_1",
                plan_tier="tier_2_pro",
                status="canceled",
                current_period_end=datetime(2999, 1, 1, tzinfo=UTC),
            )
        )
        await session.commit()

    response = await client.get("/api/billing/membership")

    body = response.json()
    assert body["status"] == "canceled"
    assert body["has_access"] is True
