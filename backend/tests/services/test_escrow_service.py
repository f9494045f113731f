"""Tests for bounty escrow: funding, confirmation, transfer and refund."""

import itertools
from unittest.mock import AsyncMock, patch

import pytest
import stripe

from reconciler.core.exceptions import (
    BountyNotFound,
    ExternalRejected,
    InvalidStateError,
    PaymentLockError,
    TransientExternalFailure,
)
from reconciler.db.models.bounty_payment import PaymentStatus
from reconciler.integrations.payments import create_transfer
from reconciler.services.escrow_service import EscrowOrchestrator
from reconciler.webhooks.applier import MutationApplier
from reconciler.webhooks.normalizer import EventScope, EventType, NormalizedEvent

pytestmark = pytest.mark.integration

_ids = itertools.count()


def bounty_event(event_type: EventType, bounty_id="bounty-1", checkout_session_id="cs_1", payment_intent_id="pi_1"):
    return NormalizedEvent(
        provider="stripe",
        event_id=f"evt_{next(_ids)}",
        event_type=event_type,
        entity_id=bounty_id,
        scope=EventScope.BOUNTY,
        payload={
            "bounty_id": bounty_id,
            "checkout_session_id": checkout_session_id,
            "payment_intent_id": payment_intent_id,
        },
    )


@pytest.fixture
def escrow(session_factory, payment_lock):
    return EscrowOrchestrator(session_factory, payment_lock=payment_lock)


@pytest.fixture
def applier(session_factory, escrow):
    return MutationApplier(session_factory, escrow=escrow)


@pytest.fixture
def stripe_calls():
    """Patch every Stripe call the orchestrator makes."""
    with (
        patch(
            "reconciler.integrations.payments.create_bounty_checkout_session",
            new_callable=AsyncMock,
            return_value={"id": "cs_1", "url": "https://checkout.stripe.test/cs_1"},
        ) as checkout,
        patch(
            "reconciler.integrations.payments.create_transfer",
            new_callable=AsyncMock,
            return_value={"id": "tr_1"},
        ) as transfer,
        patch(
            "reconciler.integrations.payments.create_refund",
            new_callable=AsyncMock,
            return_value={"id": "re_1"},
        ) as refund,
    ):
        yield {"checkout": checkout, "transfer": transfer, "refund": refund}


async def funded_bounty(escrow, applier, stripe_calls, bounty_id="bounty-1", amount=10000):
    await escrow.open_bounty(bounty_id, amount, "usd")
    await escrow.fund(bounty_id, "https://app.test/ok", "https://app.test/cancel")
    await applier.apply(bounty_event(EventType.PAYMENT_SUCCEEDED, bounty_id=bounty_id))


# ── Open and fund ──


async def test_open_bounty_records_fee_split(escrow):
    payment = await escrow.open_bounty("bounty-1", 10000, "usd")

    assert payment.status == PaymentStatus.UNFUNDED
    assert (payment.gross_amount, payment.platform_fee, payment.net_amount) == (10000, 320, 9680)


async def test_open_bounty_twice_returns_existing(escrow):
    first = await escrow.open_bounty("bounty-1", 10000)
    second = await escrow.open_bounty("bounty-1", 5000)

    assert second.gross_amount == first.gross_amount == 10000


async def test_fund_creates_checkout_and_marks_pending(escrow, stripe_calls):
    await escrow.open_bounty("bounty-1", 10000)

    result = await escrow.fund("bounty-1", "https://app.test/ok", "https://app.test/cancel")

    assert result.checkout_ref == "cs_1"
    assert result.checkout_url == "https://checkout.stripe.test/cs_1"
    kwargs = stripe_calls["checkout"].await_args.kwargs
    assert kwargs["bounty_id"] == "bounty-1"
    assert kwargs["amount"] == 10000
    payment = await escrow.get("bounty-1")
    assert payment.status == PaymentStatus.PENDING
    assert payment.checkout_session_id == "cs_1"


async def test_fund_twice_is_rejected(escrow, stripe_calls):
    await escrow.open_bounty("bounty-1", 10000)
    await escrow.fund("bounty-1", "https://app.test/ok", "https://app.test/cancel")

    with pytest.raises(InvalidStateError):
        await escrow.fund("bounty-1", "https://app.test/ok", "https://app.test/cancel")
    assert stripe_calls["checkout"].await_count == 1


async def test_fund_provider_failure_leaves_unfunded(escrow, stripe_calls):
    await escrow.open_bounty("bounty-1", 10000)
    stripe_calls["checkout"].side_effect = TransientExternalFailure("stripe", "timed out")

    with pytest.raises(TransientExternalFailure):
        await escrow.fund("bounty-1", "https://app.test/ok", "https://app.test/cancel")

    assert (await escrow.get("bounty-1")).status == PaymentStatus.UNFUNDED


async def test_fund_unknown_bounty(escrow, stripe_calls):
    with pytest.raises(BountyNotFound):
        await escrow.fund("missing", "https://app.test/ok", "https://app.test/cancel")


# ── Confirmation ──


async def test_payment_succeeded_funds_bounty(escrow, applier, stripe_calls):
    await funded_bounty(escrow, applier, stripe_calls)

    payment = await escrow.get("bounty-1")
    assert payment.status == PaymentStatus.FUNDED
    assert payment.provider_payment_id == "pi_1"


async def test_expired_checkout_returns_to_unfunded(escrow, applier, stripe_calls):
    await escrow.open_bounty("bounty-1", 10000)
    await escrow.fund("bounty-1", "https://app.test/ok", "https://app.test/cancel")

    result = await applier.apply(bounty_event(EventType.PAYMENT_FAILED, payment_intent_id=None))

    assert result.outcome == "unfunded"
    assert (await escrow.get("bounty-1")).status == PaymentStatus.UNFUNDED


async def test_failure_for_other_checkout_is_ignored(escrow, applier, stripe_calls):
    await escrow.open_bounty("bounty-1", 10000)
    await escrow.fund("bounty-1", "https://app.test/ok", "https://app.test/cancel")

    result = await applier.apply(
        bounty_event(EventType.PAYMENT_FAILED, checkout_session_id="cs_old", payment_intent_id=None)
    )

    assert result.outcome == "unchanged"
    assert (await escrow.get("bounty-1")).status == PaymentStatus.PENDING


async def test_late_failure_does_not_unfund_funded_bounty(escrow, applier, stripe_calls):
    await funded_bounty(escrow, applier, stripe_calls)

    await applier.apply(bounty_event(EventType.PAYMENT_FAILED))

    assert (await escrow.get("bounty-1")).status == PaymentStatus.FUNDED


async def test_payment_event_for_unknown_bounty_is_dropped(applier):
    result = await applier.apply(bounty_event(EventType.PAYMENT_SUCCEEDED, bounty_id="nope"))

    assert result.applied is True
    assert result.outcome == "dropped"


# ── Transfer ──


async def test_transfer_before_funding_is_rejected(escrow, stripe_calls):
    await escrow.open_bounty("bounty-1", 10000)

    with pytest.raises(InvalidStateError):
        await escrow.transfer("bounty-1", "acct_payee")
    stripe_calls["transfer"].assert_not_awaited()


async def test_transfer_sends_net_amount_once(escrow, applier, stripe_calls):
    await funded_bounty(escrow, applier, stripe_calls)

    payment = await escrow.transfer("bounty-1", "acct_payee")

    assert payment.status == PaymentStatus.TRANSFERRED
    assert payment.transfer_id == "tr_1"
    assert payment.payee_account_id == "acct_payee"
    stripe_calls["transfer"].assert_awaited_once_with(
        bounty_id="bounty-1", amount=9680, currency="usd", destination="acct_payee"
    )

    with pytest.raises(InvalidStateError):
        await escrow.transfer("bounty-1", "acct_payee")
    assert stripe_calls["transfer"].await_count == 1


async def test_transfer_with_zero_net_is_rejected(escrow, applier, stripe_calls):
    await funded_bounty(escrow, applier, stripe_calls, amount=30)

    with pytest.raises(InvalidStateError):
        await escrow.transfer("bounty-1", "acct_payee")
    stripe_calls["transfer"].assert_not_awaited()


async def test_transfer_while_locked_is_rejected(escrow, applier, stripe_calls, payment_lock):
    await funded_bounty(escrow, applier, stripe_calls)
    payment_lock.RETRY_DELAY = 0
    await payment_lock.acquire("bounty-1")

    with pytest.raises(PaymentLockError):
        await escrow.transfer("bounty-1", "acct_payee")
    assert (await escrow.get("bounty-1")).status == PaymentStatus.FUNDED


async def test_transient_transfer_failure_keeps_funded(escrow, applier, stripe_calls, payment_lock):
    await funded_bounty(escrow, applier, stripe_calls)
    stripe_calls["transfer"].side_effect = TransientExternalFailure("stripe", "timed out")

    with pytest.raises(TransientExternalFailure):
        await escrow.transfer("bounty-1", "acct_payee")

    assert (await escrow.get("bounty-1")).status == PaymentStatus.FUNDED
    assert not await payment_lock.is_locked("bounty-1")


async def test_rejected_transfer_keeps_funded(escrow, applier, stripe_calls, payment_lock):
    await funded_bounty(escrow, applier, stripe_calls)
    stripe_calls["transfer"].side_effect = create_transfer
    error = stripe.InvalidRequestError(
        "No such destination: 'acct_gone'", param="destination", code="resource_missing", http_status=400
    )

    with patch.object(stripe.Transfer, "create_async", AsyncMock(side_effect=error)):
        with pytest.raises(ExternalRejected) as exc_info:
            await escrow.transfer("bounty-1", "acct_gone")

    assert exc_info.value.code == "resource_missing"
    assert (await escrow.get("bounty-1")).status == PaymentStatus.FUNDED
    assert not await payment_lock.is_locked("bounty-1")


# ── Refund ──


async def test_refund_funded_bounty(escrow, applier, stripe_calls):
    await funded_bounty(escrow, applier, stripe_calls)

    payment = await escrow.refund("bounty-1")

    assert payment.status == PaymentStatus.REFUNDED
    stripe_calls["refund"].assert_awaited_once_with("bounty-1", "pi_1")


async def test_refund_after_transfer_is_rejected(escrow, applier, stripe_calls):
    await funded_bounty(escrow, applier, stripe_calls)
    await escrow.transfer("bounty-1", "acct_payee")

    with pytest.raises(InvalidStateError):
        await escrow.refund("bounty-1")
    stripe_calls["refund"].assert_not_awaited()
