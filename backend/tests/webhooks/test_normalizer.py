"""Tests for provider event normalization."""

from datetime import UTC, datetime

import pytest

from reconciler.core.exceptions import InvalidSignature
from reconciler.webhooks.normalizer import (
    EventScope,
    EventType,
    normalize_github,
    normalize_stripe,
)

pytestmark = pytest.mark.unit

PERIOD_END = 1775000000


def _event(event_type: str, obj: dict, event_id: str = "evt_1") -> dict:
    return {"id": event_id, "type": event_type, "data": {"object": obj}}


# ── Stripe: subscriptions ──


def test_subscription_checkout_completed_is_activation():
    event = normalize_stripe(
        _event(
            "checkout.session.completed",
            {
                "id": "cs_1",
                "mode": "subscription",
                "subscription": "sub_1",
                "customer": "cus_1",
                "metadata": {"user_id": "user_1", "plan_slug": "tier_2_pro"},
            },
        )
    )

    assert event.event_type == EventType.SUBSCRIPTION_ACTIVATED
    assert event.scope == EventScope.SUBSCRIPTION
    assert event.entity_id == "sub_1"
    assert event.payload["user_id"] == "user_1"
    assert event.payload["plan_tier"] == "tier_2_pro"
    assert event.payload["period_end"] is None


def test_invoice_paid_is_renewal_with_line_period_end():
    event = normalize_stripe(
        _event(
            "invoice.paid",
            {
                "subscription": "sub_1",
                "subscription_details": {"metadata": {"user_id": "user_1"}},
                "lines": {"data": [{"period": {"start": PERIOD_END - 86400 * 30, "end": PERIOD_END}}]},
            },
        )
    )

    assert event.event_type == EventType.SUBSCRIPTION_RENEWED
    assert event.payload["subscription_id"] == "sub_1"
    assert event.payload["user_id"] == "user_1"
    assert event.payload["period_end"] == datetime.fromtimestamp(PERIOD_END, tz=UTC)


def test_invoice_paid_reads_nested_parent_subscription_details():
    event = normalize_stripe(
        _event(
            "invoice.paid",
            {
                "parent": {
                    "subscription_details": {"subscription": "sub_9", "metadata": {"user_id": "user_9"}},
                },
                "lines": {"data": []},
            },
        )
    )

    assert event.payload["subscription_id"] == "sub_9"
    assert event.payload["user_id"] == "user_9"
    assert event.payload["period_end"] is None


def test_invoice_without_subscription_is_noop():
    event = normalize_stripe(_event("invoice.paid", {"lines": {"data": []}}))

    assert event.event_type == EventType.NOOP


def test_invoice_payment_failed_carries_attempts_and_threshold():
    event = normalize_stripe(
        _event("invoice.payment_failed", {"subscription": "sub_1", "attempt_count": 2, "lines": {"data": []}})
    )

    assert event.event_type == EventType.PAYMENT_FAILED
    assert event.scope == EventScope.SUBSCRIPTION
    assert event.payload["attempt_count"] == 2
    assert event.payload["threshold"] == 3


def test_subscription_updated_active_is_renewal():
    event = normalize_stripe(
        _event(
            "customer.subscription.updated",
            {
                "id": "sub_1",
                "status": "active",
                "metadata": {"user_id": "user_1"},
                "items": {"data": [{"current_period_end": PERIOD_END}]},
            },
        )
    )

    assert event.event_type == EventType.SUBSCRIPTION_RENEWED
    assert event.payload["period_end"] == datetime.fromtimestamp(PERIOD_END, tz=UTC)


@pytest.mark.parametrize("status", ["past_due", "unpaid"])
def test_subscription_updated_past_due_is_payment_failure(status):
    event = normalize_stripe(
        _event(
            "customer.subscription.updated",
            {
                "id": "sub_1",
                "status": status,
                "current_period_end": PERIOD_END,
                "metadata": {"user_id": "user_1"},
            },
        )
    )

    assert event.event_type == EventType.PAYMENT_FAILED
    assert event.scope == EventScope.SUBSCRIPTION
    assert event.payload["provider_past_due"] is True
    assert event.payload["user_id"] == "user_1"
    assert event.payload["period_end"] == datetime.fromtimestamp(PERIOD_END, tz=UTC)


def test_subscription_updated_incomplete_is_noop():
    event = normalize_stripe(_event("customer.subscription.updated", {"id": "sub_1", "status": "incomplete"}))

    assert event.event_type == EventType.NOOP


def test_subscription_deleted_is_cancellation():
    event = normalize_stripe(
        _event("customer.subscription.deleted", {"id": "sub_1", "metadata": {"user_id": "user_1"}})
    )

    assert event.event_type == EventType.SUBSCRIPTION_CANCELED
    assert event.payload == {"subscription_id": "sub_1", "user_id": "user_1"}


# ── Stripe: bounty payments ──


def test_paid_bounty_checkout_is_payment_succeeded():
    event = normalize_stripe(
        _event(
            "checkout.session.completed",
            {
                "id": "cs_1",
                "mode": "payment",
                "payment_status": "paid",
                "payment_intent": "pi_1",
                "metadata": {"bounty_id": "bounty-1"},
            },
        )
    )

    assert event.event_type == EventType.PAYMENT_SUCCEEDED
    assert event.scope == EventScope.BOUNTY
    assert event.payload == {"bounty_id": "bounty-1", "checkout_session_id": "cs_1", "payment_intent_id": "pi_1"}


def test_unpaid_bounty_checkout_is_noop():
    event = normalize_stripe(
        _event(
            "checkout.session.completed",
            {"id": "cs_1", "mode": "payment", "payment_status": "unpaid", "metadata": {"bounty_id": "bounty-1"}},
        )
    )

    assert event.event_type == EventType.NOOP


def test_expired_bounty_checkout_is_payment_failed():
    event = normalize_stripe(
        _event("checkout.session.expired", {"id": "cs_1", "mode": "payment", "metadata": {"bounty_id": "bounty-1"}})
    )

    assert event.event_type == EventType.PAYMENT_FAILED
    assert event.scope == EventScope.BOUNTY
    assert event.payload["checkout_session_id"] == "cs_1"


def test_payment_intent_events_for_bounties():
    succeeded = normalize_stripe(
        _event("payment_intent.succeeded", {"id": "pi_1", "metadata": {"bounty_id": "bounty-1"}})
    )
    canceled = normalize_stripe(
        _event("payment_intent.canceled", {"id": "pi_1", "metadata": {"bounty_id": "bounty-1"}}, event_id="evt_2")
    )

    assert succeeded.event_type == EventType.PAYMENT_SUCCEEDED
    assert succeeded.payload["payment_intent_id"] == "pi_1"
    assert canceled.event_type == EventType.PAYMENT_FAILED


def test_payment_intent_without_bounty_is_noop():
    event = normalize_stripe(_event("payment_intent.succeeded", {"id": "pi_1", "metadata": {}}))

    assert event.event_type == EventType.NOOP


def test_unknown_stripe_event_is_noop_with_id():
    event = normalize_stripe(_event("customer.created", {"id": "cus_1"}, event_id="evt_42"))

    assert event.event_type == EventType.NOOP
    assert event.event_id == "evt_42"
    assert event.provider == "stripe"


def test_stripe_event_without_id_is_rejected():
    with pytest.raises(InvalidSignature):
        normalize_stripe({"type": "invoice.paid", "data": {"object": {}}})


# ── GitHub ──


def _installation_payload(action: str, **extra) -> dict:
    return {
        "action": action,
        "installation": {"id": 4242, "account": {"login": "octo-org"}},
        "sender": {"id": 99, "login": "octocat"},
        **extra,
    }


def test_installation_created_is_bind():
    event = normalize_github(
        "installation",
        "delivery-1",
        _installation_payload("created", repositories=[{"id": 1}, {"id": 2}]),
    )

    assert event.event_type == EventType.INSTALLATION_CHANGED
    assert event.event_id == "delivery-1"
    assert event.entity_id == "4242"
    assert event.payload == {
        "installation_id": 4242,
        "action": "bind",
        "sender_id": "99",
        "account_login": "octo-org",
        "repository_ids": ["1", "2"],
    }


def test_installation_without_repository_list_leaves_it_unknown():
    event = normalize_github("installation", "delivery-1", _installation_payload("new_permissions_accepted"))

    assert event.payload["repository_ids"] is None


def test_installation_deleted_is_unbind():
    event = normalize_github("installation", "delivery-1", _installation_payload("deleted"))

    assert event.payload["action"] == "unbind"


def test_installation_repositories_added():
    event = normalize_github(
        "installation_repositories",
        "delivery-1",
        _installation_payload("added", repositories_added=[{"id": 3}], repositories_removed=[]),
    )

    assert event.payload["action"] == "repositories"
    assert event.payload["added"] == ["3"]
    assert event.payload["removed"] == []


def test_other_github_events_are_noop():
    event = normalize_github("push", "delivery-1", {"ref": "refs/heads/main"})

    assert event.event_type == EventType.NOOP
    assert event.provider == "github"


def test_github_delivery_without_id_is_rejected():
    with pytest.raises(InvalidSignature):
        normalize_github("installation", None, _installation_payload("created"))
