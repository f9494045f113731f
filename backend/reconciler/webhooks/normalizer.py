"""Translate provider webhooks into the internal event vocabulary.

Normalization is pure: no I/O, no database. Provider event types outside the
vocabulary become ``noop`` events so they are still recorded as processed.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from reconciler.core.config import get_settings
from reconciler.core.exceptions import InvalidSignature


class EventType(StrEnum):
    SUBSCRIPTION_ACTIVATED = "subscription.activated"
    SUBSCRIPTION_RENEWED = "subscription.renewed"
    SUBSCRIPTION_CANCELED = "subscription.canceled"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_SUCCEEDED = "payment.succeeded"
    INSTALLATION_CHANGED = "installation.changed"
    NOOP = "noop"


class EventScope(StrEnum):
    SUBSCRIPTION = "subscription"
    BOUNTY = "bounty"
    INSTALLATION = "installation"


class Provider(StrEnum):
    STRIPE = "stripe"
    GITHUB = "github"


@dataclass(frozen=True)
class NormalizedEvent:
    provider: str
    event_id: str
    event_type: EventType
    entity_id: str | None = None
    scope: EventScope | None = None
    payload: dict[str, Any] = field(default_factory=dict)


def _timestamp(value: Any) -> datetime | None:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=UTC)


def _noop(provider: str, event_id: str) -> NormalizedEvent:
    return NormalizedEvent(provider=provider, event_id=event_id, event_type=EventType.NOOP)


# ── Stripe ──────────────────────────────────────────────────────────────────


def _invoice_subscription(invoice: Mapping) -> tuple[str | None, Mapping]:
    """Return (subscription id, subscription metadata) for an invoice.

    Older API versions put both on the invoice; newer ones nest them under
    ``parent.subscription_details``.
    """
    details = invoice.get("subscription_details") or {}
    parent_details = (invoice.get("parent") or {}).get("subscription_details") or {}

    subscription_id = invoice.get("subscription") or parent_details.get("subscription")
    if isinstance(subscription_id, Mapping):
        subscription_id = subscription_id.get("id")
    metadata = details.get("metadata") or parent_details.get("metadata") or {}
    return subscription_id, metadata


def _invoice_period_end(invoice: Mapping) -> datetime | None:
    lines = (invoice.get("lines") or {}).get("data") or []
    for line in lines:
        period_end = (line.get("period") or {}).get("end")
        if period_end:
            return _timestamp(period_end)
    return None


def _subscription_period_end(subscription: Mapping) -> datetime | None:
    period_end = subscription.get("current_period_end")
    if not period_end:
        items = (subscription.get("items") or {}).get("data") or []
        if items:
            period_end = items[0].get("current_period_end")
    return _timestamp(period_end)


def _bounty_event(
    event_id: str,
    event_type: EventType,
    bounty_id: str,
    checkout_session_id: str | None = None,
    payment_intent_id: str | None = None,
) -> NormalizedEvent:
    return NormalizedEvent(
        provider=Provider.STRIPE,
        event_id=event_id,
        event_type=event_type,
        entity_id=bounty_id,
        scope=EventScope.BOUNTY,
        payload={
            "bounty_id": bounty_id,
            "checkout_session_id": checkout_session_id,
            "payment_intent_id": payment_intent_id,
        },
    )


def _normalize_checkout_session(event_id: str, stripe_type: str, session: Mapping) -> NormalizedEvent:
    metadata = session.get("metadata") or {}

    if session.get("mode") == "subscription":
        if stripe_type != "checkout.session.completed":
            return _noop(Provider.STRIPE, event_id)
        subscription_id = session.get("subscription")
        if isinstance(subscription_id, Mapping):
            subscription_id = subscription_id.get("id")
        return NormalizedEvent(
            provider=Provider.STRIPE,
            event_id=event_id,
            event_type=EventType.SUBSCRIPTION_ACTIVATED,
            entity_id=subscription_id,
            scope=EventScope.SUBSCRIPTION,
            payload={
                "subscription_id": subscription_id,
                "user_id": metadata.get("user_id"),
                "plan_tier": metadata.get("plan_slug"),
                "customer_id": session.get("customer"),
                "period_end": None,
            },
        )

    bounty_id = metadata.get("bounty_id")
    if session.get("mode") != "payment" or not bounty_id:
        return _noop(Provider.STRIPE, event_id)

    session_id = session.get("id")
    payment_intent_id = session.get("payment_intent")

    if stripe_type == "checkout.session.completed":
        # Delayed payment methods complete unpaid and settle asynchronously
        if session.get("payment_status") != "paid":
            return _noop(Provider.STRIPE, event_id)
        return _bounty_event(event_id, EventType.PAYMENT_SUCCEEDED, bounty_id, session_id, payment_intent_id)
    if stripe_type == "checkout.session.async_payment_succeeded":
        return _bounty_event(event_id, EventType.PAYMENT_SUCCEEDED, bounty_id, session_id, payment_intent_id)
    if stripe_type in ("checkout.session.expired", "checkout.session.async_payment_failed"):
        return _bounty_event(event_id, EventType.PAYMENT_FAILED, bounty_id, session_id, payment_intent_id)
    return _noop(Provider.STRIPE, event_id)


def normalize_stripe(event: Mapping) -> NormalizedEvent:
    """Map a verified Stripe event to a NormalizedEvent."""
    event_id = event.get("id")
    stripe_type = event.get("type")
    if not event_id or not stripe_type:
        raise InvalidSignature("Stripe event is missing id or type")

    obj = (event.get("data") or {}).get("object") or {}
    metadata = obj.get("metadata") or {}

    if stripe_type.startswith("checkout.session."):
        return _normalize_checkout_session(event_id, stripe_type, obj)

    if stripe_type == "customer.subscription.updated":
        status = obj.get("status")
        if status in ("past_due", "unpaid"):
            # Stripe applied its own dunning policy; no local threshold involved
            return NormalizedEvent(
                provider=Provider.STRIPE,
                event_id=event_id,
                event_type=EventType.PAYMENT_FAILED,
                entity_id=obj.get("id"),
                scope=EventScope.SUBSCRIPTION,
                payload={
                    "subscription_id": obj.get("id"),
                    "user_id": metadata.get("user_id"),
                    "period_end": _subscription_period_end(obj),
                    "provider_past_due": True,
                },
            )
        if status not in ("active", "trialing"):
            return _noop(Provider.STRIPE, event_id)
        return NormalizedEvent(
            provider=Provider.STRIPE,
            event_id=event_id,
            event_type=EventType.SUBSCRIPTION_RENEWED,
            entity_id=obj.get("id"),
            scope=EventScope.SUBSCRIPTION,
            payload={
                "subscription_id": obj.get("id"),
                "user_id": metadata.get("user_id"),
                "plan_tier": metadata.get("plan_slug"),
                "period_end": _subscription_period_end(obj),
            },
        )

    if stripe_type == "customer.subscription.deleted":
        return NormalizedEvent(
            provider=Provider.STRIPE,
            event_id=event_id,
            event_type=EventType.SUBSCRIPTION_CANCELED,
            entity_id=obj.get("id"),
            scope=EventScope.SUBSCRIPTION,
            payload={
                "subscription_id": obj.get("id"),
                "user_id": metadata.get("user_id"),
            },
        )

    if stripe_type in ("invoice.paid", "invoice.payment_failed"):
        subscription_id, sub_metadata = _invoice_subscription(obj)
        if not subscription_id:
            # One-off invoices have nothing to do with memberships
            return _noop(Provider.STRIPE, event_id)

        payload = {
            "subscription_id": subscription_id,
            "user_id": sub_metadata.get("user_id"),
            "period_end": _invoice_period_end(obj),
        }
        if stripe_type == "invoice.paid":
            payload["plan_tier"] = sub_metadata.get("plan_slug")
            event_type = EventType.SUBSCRIPTION_RENEWED
        else:
            payload["attempt_count"] = obj.get("attempt_count") or 0
            payload["threshold"] = get_settings().stripe_past_due_attempt_threshold
            event_type = EventType.PAYMENT_FAILED

        return NormalizedEvent(
            provider=Provider.STRIPE,
            event_id=event_id,
            event_type=event_type,
            entity_id=subscription_id,
            scope=EventScope.SUBSCRIPTION,
            payload=payload,
        )

    if stripe_type.startswith("payment_intent."):
        bounty_id = metadata.get("bounty_id")
        if not bounty_id:
            return _noop(Provider.STRIPE, event_id)
        if stripe_type == "payment_intent.succeeded":
            return _bounty_event(event_id, EventType.PAYMENT_SUCCEEDED, bounty_id, payment_intent_id=obj.get("id"))
        if stripe_type in ("payment_intent.payment_failed", "payment_intent.canceled"):
            return _bounty_event(event_id, EventType.PAYMENT_FAILED, bounty_id, payment_intent_id=obj.get("id"))

    return _noop(Provider.STRIPE, event_id)


# ── GitHub ──────────────────────────────────────────────────────────────────

_BIND_ACTIONS = frozenset({"created", "new_permissions_accepted", "unsuspend"})


def _repository_ids(repositories: list | None) -> list[str]:
    return [str(repo["id"]) for repo in repositories or [] if repo.get("id") is not None]


def _installation_event(event_id: str, installation_id: int, payload: dict) -> NormalizedEvent:
    return NormalizedEvent(
        provider=Provider.GITHUB,
        event_id=event_id,
        event_type=EventType.INSTALLATION_CHANGED,
        entity_id=str(installation_id),
        scope=EventScope.INSTALLATION,
        payload={"installation_id": installation_id, **payload},
    )


def normalize_github(event_name: str | None, delivery_id: str | None, payload: Mapping) -> NormalizedEvent:
    """Map a verified GitHub App webhook to a NormalizedEvent.

    ``event_name`` is the X-GitHub-Event header and ``delivery_id`` the
    X-GitHub-Delivery header, which serves as the event id.
    """
    if not delivery_id or not event_name:
        raise InvalidSignature("GitHub delivery is missing event or delivery headers")

    if event_name not in ("installation", "installation_repositories"):
        return _noop(Provider.GITHUB, delivery_id)

    installation = payload.get("installation") or {}
    installation_id = installation.get("id")
    if installation_id is None:
        raise InvalidSignature("GitHub installation event without installation id")
    installation_id = int(installation_id)

    action = payload.get("action")
    sender_id = (payload.get("sender") or {}).get("id")

    if event_name == "installation":
        if action in _BIND_ACTIONS:
            return _installation_event(delivery_id, installation_id, {
                "action": "bind",
                "sender_id": str(sender_id) if sender_id is not None else None,
                "account_login": (installation.get("account") or {}).get("login"),
                # None means the event does not carry the repository list
                "repository_ids": (
                    _repository_ids(payload["repositories"]) if "repositories" in payload else None
                ),
            })
        if action == "deleted":
            return _installation_event(delivery_id, installation_id, {"action": "unbind"})
        return _noop(Provider.GITHUB, delivery_id)

    if action in ("added", "removed"):
        return _installation_event(delivery_id, installation_id, {
            "action": "repositories",
            "added": _repository_ids(payload.get("repositories_added")),
            "removed": _repository_ids(payload.get("repositories_removed")),
        })
    return _noop(Provider.GITHUB, delivery_id)
