"""Inbound provider webhooks: verify, normalize, apply exactly once."""

import structlog
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from reconciler.core.config import get_settings
from reconciler.core.exceptions import InvalidSignature, TransientExternalFailure
from reconciler.core.logging import bind_delivery_context, clear_delivery_context
from reconciler.db.base import get_session_factory
from reconciler.webhooks.applier import MutationApplier
from reconciler.webhooks.normalizer import NormalizedEvent, normalize_github, normalize_stripe
from reconciler.webhooks.signatures import verify_github, verify_stripe

logger = structlog.get_logger(__name__)

router = APIRouter()


def get_applier() -> MutationApplier:
    return MutationApplier(get_session_factory())


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


async def _apply(applier: MutationApplier, event: NormalizedEvent):
    bind_delivery_context(event.provider, event.event_id)
    try:
        await applier.apply(event)
    except TransientExternalFailure as exc:
        # Nothing was recorded; a non-2xx makes the provider redeliver
        logger.warning("webhook_apply_transient_failure", provider_error=str(exc))
        return _error(500, "Temporary failure, please redeliver")
    except Exception as exc:
        logger.error(
            "webhook_apply_failed",
            event_type=event.event_type.value,
            error=str(exc),
            error_type=type(exc).__name__,
            exc_info=True,
        )
        return _error(500, "Internal error, please redeliver")
    finally:
        clear_delivery_context()
    return {"received": True}


@router.post("/webhooks/stripe")
async def stripe_webhook(request: Request, applier: MutationApplier = Depends(get_applier)):
    """Stripe webhook receiver. Duplicates are acknowledged and ignored."""
    secret = get_settings().stripe_webhook_secret
    if not secret:
        logger.error("stripe_webhook_not_configured")
        return _error(503, "Webhook not configured")

    payload = await request.body()
    try:
        event = verify_stripe(payload, request.headers.get("stripe-signature"), secret)
        normalized = normalize_stripe(event)
    except InvalidSignature as exc:
        logger.warning("stripe_webhook_rejected", reason=str(exc))
        return _error(400, str(exc))

    return await _apply(applier, normalized)


@router.post("/webhooks/github")
async def github_webhook(request: Request, applier: MutationApplier = Depends(get_applier)):
    """GitHub App webhook receiver."""
    secret = get_settings().github_webhook_secret
    if not secret:
        logger.error("github_webhook_not_configured")
        return _error(503, "Webhook not configured")

    payload = await request.body()
    try:
        body = verify_github(payload, request.headers.get("x-hub-signature-256"), secret)
        normalized = normalize_github(
            request.headers.get("x-github-event"),
            request.headers.get("x-github-delivery"),
            body,
        )
    except InvalidSignature as exc:
        logger.warning("github_webhook_rejected", reason=str(exc))
        return _error(400, str(exc))

    return await _apply(applier, normalized)
