"""Bounty escrow routes: quote, open, fund, transfer and refund."""

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from reconciler.core.auth import SessionUser, require_auth
from reconciler.core.config import get_settings
from reconciler.core.exceptions import (
    BountyNotFound,
    InvalidStateError,
    PaymentLockError,
    ReconcilerError,
    TransientExternalFailure,
)
from reconciler.db.base import get_session_factory
from reconciler.db.models.bounty_payment import BountyPayment
from reconciler.services.escrow_service import EscrowOrchestrator, quote

logger = structlog.get_logger(__name__)

router = APIRouter()


# ── Request / Response schemas ──────────────────────────────────────


class QuoteResponse(BaseModel):
    amount: int
    currency: str
    fee: int
    net: int


class OpenBountyRequest(BaseModel):
    amount: int = Field(gt=0)
    currency: str = Field(default="usd", min_length=3, max_length=3)


class TransferRequest(BaseModel):
    payee_account_id: str = Field(min_length=1)


class FundResponse(BaseModel):
    checkout_ref: str
    checkout_url: str | None


class BountyPaymentResponse(BaseModel):
    bounty_id: str
    status: str
    gross_amount: int
    platform_fee: int
    net_amount: int
    currency: str


# ── Helpers ─────────────────────────────────────────────────────────


def get_escrow() -> EscrowOrchestrator:
    return EscrowOrchestrator(get_session_factory())


def _payment_response(payment: BountyPayment) -> BountyPaymentResponse:
    return BountyPaymentResponse(
        bounty_id=payment.bounty_id,
        status=payment.status,
        gross_amount=payment.gross_amount,
        platform_fee=payment.platform_fee,
        net_amount=payment.net_amount,
        currency=payment.currency,
    )


def _http_error(bounty_id: str, operation: str, exc: ReconcilerError) -> HTTPException:
    """Map escrow failures to sanitized HTTP errors; the log keeps the details."""
    log = logger.bind(bounty_id=bounty_id, operation=operation, error=str(exc), error_type=type(exc).__name__)
    if isinstance(exc, BountyNotFound):
        log.info("bounty_payment_not_found")
        return HTTPException(status_code=404, detail="Bounty not found")
    if isinstance(exc, InvalidStateError):
        log.info("bounty_payment_invalid_state")
        return HTTPException(status_code=409, detail="This bounty's payment state does not allow that action")
    if isinstance(exc, PaymentLockError):
        log.info("bounty_payment_locked")
        return HTTPException(status_code=409, detail="Another payment operation is in progress, please retry")
    if isinstance(exc, TransientExternalFailure):
        log.warning("bounty_payment_unavailable")
        return HTTPException(status_code=503, detail="Payment could not be completed, please retry")
    log.error("bounty_payment_failed")
    return HTTPException(status_code=502, detail="Payment provider rejected the request")


# ── Routes ──────────────────────────────────────────────────────────


@router.get("/quote", response_model=QuoteResponse)
async def get_quote(
    amount: int = Query(ge=0),
    currency: str = Query(default="usd", min_length=3, max_length=3),
):
    fees = quote(amount, currency)
    return QuoteResponse(amount=fees.amount, currency=fees.currency, fee=fees.fee, net=fees.net)


@router.get("/{bounty_id}/payment", response_model=BountyPaymentResponse)
async def get_payment(
    bounty_id: str,
    user: SessionUser = Depends(require_auth),
    escrow: EscrowOrchestrator = Depends(get_escrow),
):
    try:
        payment = await escrow.get(bounty_id)
    except BountyNotFound as exc:
        raise _http_error(bounty_id, "get", exc)
    return _payment_response(payment)


@router.post("/{bounty_id}/open", response_model=BountyPaymentResponse)
async def open_bounty(
    bounty_id: str,
    body: OpenBountyRequest,
    user: SessionUser = Depends(require_auth),
    escrow: EscrowOrchestrator = Depends(get_escrow),
):
    payment = await escrow.open_bounty(bounty_id, body.amount, body.currency)
    return _payment_response(payment)


@router.post("/{bounty_id}/fund", response_model=FundResponse)
async def fund_bounty(
    bounty_id: str,
    user: SessionUser = Depends(require_auth),
    escrow: EscrowOrchestrator = Depends(get_escrow),
):
    base = get_settings().frontend_url.rstrip("/")
    try:
        result = await escrow.fund(
            bounty_id,
            success_url=f"{base}/bounties/{bounty_id}",
            cancel_url=f"{base}/bounties/{bounty_id}?payment=cancelled",
        )
    except ReconcilerError as exc:
        raise _http_error(bounty_id, "fund", exc)
    return FundResponse(checkout_ref=result.checkout_ref, checkout_url=result.checkout_url)


@router.post("/{bounty_id}/transfer", response_model=BountyPaymentResponse)
async def transfer_bounty(
    bounty_id: str,
    body: TransferRequest,
    user: SessionUser = Depends(require_auth),
    escrow: EscrowOrchestrator = Depends(get_escrow),
):
    try:
        payment = await escrow.transfer(bounty_id, body.payee_account_id)
    except ReconcilerError as exc:
        raise _http_error(bounty_id, "transfer", exc)
    return _payment_response(payment)


@router.post("/{bounty_id}/refund", response_model=BountyPaymentResponse)
async def refund_bounty(
    bounty_id: str,
    user: SessionUser = Depends(require_auth),
    escrow: EscrowOrchestrator = Depends(get_escrow),
):
    try:
        payment = await escrow.refund(bounty_id)
    except ReconcilerError as exc:
        raise _http_error(bounty_id, "refund", exc)
    return _payment_response(payment)
