"""Stripe calls used by the reconciliation engine.

Every call goes through ``call_stripe`` which bounds it with
``external_timeout_seconds`` and turns connectivity problems into
``TransientExternalFailure``. Other refusals (4xx) become
``ExternalRejected``. The SDK's own network retries are disabled: retries
belong to the caller or to Stripe's webhook redelivery.
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

import stripe
import structlog

from reconciler.core.config import get_settings
from reconciler.core.exceptions import ExternalConflict, ExternalRejected, TransientExternalFailure

logger = structlog.get_logger(__name__)


def configure_stripe() -> None:
    """Configure the stripe module with the secret key and no automatic retries."""
    settings = get_settings()
    stripe.api_key = settings.stripe_secret_key
    stripe.max_network_retries = 0


async def call_stripe(operation: str, method: Callable[..., Awaitable[Any]], **params: Any) -> Any:
    """Run one async Stripe SDK method under the configured timeout."""
    configure_stripe()
    timeout = get_settings().external_timeout_seconds
    try:
        return await asyncio.wait_for(method(**params), timeout=timeout)
    except TimeoutError:
        logger.warning("stripe_call_timeout", operation=operation, timeout=timeout)
        raise TransientExternalFailure("stripe", f"{operation} timed out after {timeout}s")
    except (stripe.APIConnectionError, stripe.RateLimitError) as exc:
        logger.warning("stripe_call_unavailable", operation=operation, error=str(exc))
        raise TransientExternalFailure("stripe", f"{operation}: {exc.user_message or exc}") from exc
    except stripe.IdempotencyError as exc:
        logger.warning("stripe_idempotency_conflict", operation=operation, error=str(exc))
        raise ExternalConflict(f"{operation}: {exc}") from exc
    except stripe.APIError as exc:
        # APIError is Stripe's 5xx class; everything else is a caller error
        logger.warning("stripe_call_failed", operation=operation, http_status=exc.http_status, error=str(exc))
        raise TransientExternalFailure("stripe", f"{operation}: {exc}") from exc
    except stripe.AuthenticationError as exc:
        # Retryable once the key is fixed
        logger.error("stripe_call_unauthenticated", operation=operation, error=str(exc))
        raise TransientExternalFailure("stripe", f"{operation}: {exc}") from exc
    except stripe.StripeError as exc:
        logger.warning(
            "stripe_call_rejected",
            operation=operation,
            http_status=exc.http_status,
            code=exc.code,
            error=str(exc),
        )
        raise ExternalRejected("stripe", f"{operation}: {exc}", status=exc.http_status, code=exc.code) from exc


def _to_datetime(timestamp: int | None) -> datetime | None:
    if not timestamp:
        return None
    return datetime.fromtimestamp(int(timestamp), tz=UTC)


async def fetch_subscription_period_end(subscription_id: str) -> datetime | None:
    """Return the subscription's current period end, or None if Stripe omits it.

    Newer API versions report the period on subscription items rather than on
    the subscription itself; both places are checked.
    """
    subscription = await call_stripe(
        "subscription.retrieve",
        stripe.Subscription.retrieve_async,
        id=subscription_id,
    )
    period_end = subscription.get("current_period_end")
    if not period_end:
        items = (subscription.get("items") or {}).get("data") or []
        if items:
            period_end = items[0].get("current_period_end")
    return _to_datetime(period_end)


async def create_bounty_checkout_session(
    bounty_id: str,
    amount: int,
    currency: str,
    success_url: str,
    cancel_url: str,
    idempotency_key: str,
) -> Any:
    """Create a hosted Checkout Session collecting the bounty's gross amount.

    Funds are captured immediately into the platform balance and held there
    until transfer or refund.
    """
    return await call_stripe(
        "checkout.session.create",
        stripe.checkout.Session.create_async,
        mode="payment",
        line_items=[
            {
                "price_data": {
                    "currency": currency,
                    "unit_amount": amount,
                    "product_data": {"name": "Bounty deposit"},
                },
                "quantity": 1,
            }
        ],
        payment_intent_data={
            "capture_method": "automatic",
            "metadata": {"bounty_id": bounty_id},
        },
        metadata={"bounty_id": bounty_id},
        success_url=f"{success_url}?session_id={{CHECKOUT_SESSION_ID}}&payment=success",
        cancel_url=cancel_url,
        idempotency_key=idempotency_key,
    )


async def create_transfer(
    bounty_id: str,
    amount: int,
    currency: str,
    destination: str,
) -> Any:
    """Send ``amount`` to a connected account.

    The idempotency key is fixed per bounty so a bounty can only ever produce
    one transfer, even when the caller retries after a timeout.
    """
    return await call_stripe(
        "transfer.create",
        stripe.Transfer.create_async,
        amount=amount,
        currency=currency,
        destination=destination,
        metadata={"bounty_id": bounty_id},
        idempotency_key=f"transfer-{bounty_id}",
    )


async def create_refund(bounty_id: str, payment_intent_id: str) -> Any:
    return await call_stripe(
        "refund.create",
        stripe.Refund.create_async,
        payment_intent=payment_intent_id,
        metadata={"bounty_id": bounty_id},
        idempotency_key=f"refund-{bounty_id}",
    )
