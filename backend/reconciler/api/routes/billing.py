"""Billing routes: portal, usage, checkout and lazy customer creation."""

from datetime import datetime

import structlog
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy import select

from reconciler.core.auth import SessionUser, require_auth
from reconciler.core.config import get_settings
from reconciler.core.exceptions import ReconcilerError, TransientExternalFailure
from reconciler.db.base import get_session_factory
from reconciler.db.models.membership import Membership
from reconciler.services.customer_service import ActionResult, CustomerReconciler
from reconciler.services.subscription_service import has_access

logger = structlog.get_logger(__name__)

router = APIRouter()


# ── Request / Response schemas ──────────────────────────────────────


class UsageRequest(BaseModel):
    event: str = Field(min_length=1)
    metadata: dict = Field(default_factory=dict)


class CheckoutRequest(BaseModel):
    plan_slug: str


class ActionResponse(BaseModel):
    status: str
    action_type: str
    data: dict = Field(default_factory=dict)


class CustomerResponse(BaseModel):
    creation_state: str
    external_customer_id: str | None
    replayed: ActionResponse | None = None


class MembershipResponse(BaseModel):
    status: str
    plan_tier: str | None
    current_period_end: datetime | None
    has_access: bool


# ── Helpers ─────────────────────────────────────────────────────────


def get_customer_reconciler() -> CustomerReconciler:
    return CustomerReconciler(get_session_factory())


def _to_response(result: ActionResult) -> ActionResponse:
    return ActionResponse(status=result.status, action_type=result.action_type, data=result.data)


async def _run_action(
    action,
    user: SessionUser,
    reconciler: CustomerReconciler,
    background_tasks: BackgroundTasks,
) -> ActionResponse:
    try:
        result = await action
    except TransientExternalFailure as exc:
        logger.warning("billing_action_unavailable", user_id=user.user_id, provider_error=str(exc))
        raise HTTPException(status_code=503, detail="Billing is temporarily unavailable, please retry")
    except ReconcilerError as exc:
        logger.error("billing_action_failed", user_id=user.user_id, error=str(exc), error_type=type(exc).__name__)
        raise HTTPException(status_code=502, detail="Billing request failed")

    if result.status == "deferred":
        background_tasks.add_task(reconciler.ensure_in_background, user.user_id, user.email, user.name)
    return _to_response(result)


# ── Routes ──────────────────────────────────────────────────────────


@router.post("/portal", response_model=ActionResponse)
async def open_portal(
    background_tasks: BackgroundTasks,
    user: SessionUser = Depends(require_auth),
    reconciler: CustomerReconciler = Depends(get_customer_reconciler),
):
    return await _run_action(reconciler.open_billing_portal(user.user_id), user, reconciler, background_tasks)


@router.post("/usage", response_model=ActionResponse)
async def track_usage(
    body: UsageRequest,
    background_tasks: BackgroundTasks,
    user: SessionUser = Depends(require_auth),
    reconciler: CustomerReconciler = Depends(get_customer_reconciler),
):
    return await _run_action(
        reconciler.track_usage(user.user_id, body.event, body.metadata), user, reconciler, background_tasks
    )


@router.post("/checkout", response_model=ActionResponse)
async def start_checkout(
    body: CheckoutRequest,
    background_tasks: BackgroundTasks,
    user: SessionUser = Depends(require_auth),
    reconciler: CustomerReconciler = Depends(get_customer_reconciler),
):
    settings = get_settings()
    if body.plan_slug not in settings.membership_plans:
        raise HTTPException(status_code=400, detail="Invalid plan")

    success_url = f"{settings.frontend_url.rstrip('/')}/billing?session_id={{CHECKOUT_SESSION_ID}}"
    return await _run_action(
        reconciler.start_checkout(user.user_id, body.plan_slug, success_url), user, reconciler, background_tasks
    )


@router.post("/customer", response_model=CustomerResponse)
async def ensure_customer(
    user: SessionUser = Depends(require_auth),
    reconciler: CustomerReconciler = Depends(get_customer_reconciler),
):
    """Create the user's billing customer if needed and replay any deferred action."""
    try:
        outcome = await reconciler.ensure_with_replay(user.user_id, user.email, user.name)
    except TransientExternalFailure as exc:
        logger.warning("billing_customer_unavailable", user_id=user.user_id, provider_error=str(exc))
        raise HTTPException(status_code=503, detail="Billing is temporarily unavailable, please retry")
    except ReconcilerError as exc:
        logger.error("billing_customer_failed", user_id=user.user_id, error=str(exc))
        raise HTTPException(status_code=502, detail="Billing request failed")

    customer = outcome.customer
    return CustomerResponse(
        creation_state=customer.creation_state if customer else "absent",
        external_customer_id=customer.external_customer_id if customer else None,
        replayed=_to_response(outcome.replayed) if outcome.replayed else None,
    )


@router.get("/membership", response_model=MembershipResponse)
async def get_membership(user: SessionUser = Depends(require_auth)):
    async with get_session_factory()() as session:
        result = await session.execute(select(Membership).where(Membership.user_id == user.user_id))
        membership = result.scalar_one_or_none()

    if membership is None:
        return MembershipResponse(status="none", plan_tier=None, current_period_end=None, has_access=False)
    return MembershipResponse(
        status=membership.status,
        plan_tier=membership.plan_tier,
        current_period_end=membership.current_period_end,
        has_access=has_access(membership),
    )
