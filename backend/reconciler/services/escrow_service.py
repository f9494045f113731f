"""Escrow orchestration for bounty payments.

Lifecycle: unfunded -> pending -> funded -> {transferred | refunded}, with
pending -> unfunded when a checkout attempt fails or expires. User-initiated
money movement (fund, transfer, refund) runs under the bounty's Redis payment
lock; webhook-driven confirmation runs inside the applier's transaction.
Every state change is a conditional update on the expected current status.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

import structlog
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from reconciler.core.config import get_settings
from reconciler.core.exceptions import (
    BountyNotFound,
    InvalidStateError,
    MissingRequiredMetadata,
)
from reconciler.core.locking import PaymentLock
from reconciler.db.base import utcnow
from reconciler.db.models.bounty_payment import BountyPayment, PaymentStatus
from reconciler.integrations import payments
from reconciler.webhooks.normalizer import EventType, NormalizedEvent

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class FeeQuote:
    amount: int
    currency: str
    fee: int
    net: int


@dataclass(frozen=True)
class FundResult:
    checkout_ref: str
    checkout_url: str | None


def quote(amount: int, currency: str = "usd") -> FeeQuote:
    """Split a gross amount (minor units) into platform fee and payee net.

    fee = percent * amount + fixed, rounded half-up to the minor unit and
    capped at the amount, so fee + net == amount always holds.

    Example:
        quote(10000, "usd") -> FeeQuote(amount=10000, currency="usd", fee=320, net=9680)
    """
    if amount < 0:
        raise ValueError(f"amount must be non-negative, got {amount}")

    settings = get_settings()
    currency = currency.lower()
    percent = Decimal(settings.processing_fee_percent)
    fixed = settings.processing_fee_fixed.get(currency, settings.processing_fee_fixed_default)

    raw_fee = Decimal(amount) * percent / Decimal(100) + Decimal(fixed)
    fee = min(int(raw_fee.quantize(Decimal(1), rounding=ROUND_HALF_UP)), amount)
    return FeeQuote(amount=amount, currency=currency, fee=fee, net=amount - fee)


class EscrowOrchestrator:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        payment_lock: PaymentLock | None = None,
    ):
        self.session_factory = session_factory
        self.payment_lock = payment_lock or PaymentLock()

    async def get(self, bounty_id: str) -> BountyPayment:
        async with self.session_factory() as session:
            payment = await session.get(BountyPayment, bounty_id)
        if payment is None:
            raise BountyNotFound(f"No payment record for bounty {bounty_id}")
        return payment

    async def open_bounty(self, bounty_id: str, gross_amount: int, currency: str = "usd") -> BountyPayment:
        """Create the unfunded payment record for a bounty.

        Opening the same bounty again returns the existing record.
        """
        if gross_amount <= 0:
            raise ValueError(f"gross_amount must be positive, got {gross_amount}")

        fees = quote(gross_amount, currency)
        async with self.session_factory() as session:
            existing = await session.get(BountyPayment, bounty_id)
            if existing is not None:
                return existing

            payment = BountyPayment(
                bounty_id=bounty_id,
                gross_amount=fees.amount,
                currency=fees.currency,
                platform_fee=fees.fee,
                net_amount=fees.net,
                status=PaymentStatus.UNFUNDED.value,
            )
            session.add(payment)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                return await self.get(bounty_id)

        logger.info(
            "bounty_payment_opened",
            bounty_id=bounty_id,
            gross_amount=fees.amount,
            fee=fees.fee,
            net=fees.net,
        )
        return payment

    async def _set_status(
        self,
        session: AsyncSession,
        bounty_id: str,
        expected: PaymentStatus,
        **values,
    ) -> bool:
        result = await session.execute(
            update(BountyPayment)
            .where(BountyPayment.bounty_id == bounty_id, BountyPayment.status == expected.value)
            .values(updated_at=utcnow(), **values)
        )
        return result.rowcount == 1

    async def fund(self, bounty_id: str, success_url: str, cancel_url: str) -> FundResult:
        """Start a hosted checkout for the bounty's gross amount.

        Only an unfunded bounty can be funded. If the provider call fails the
        bounty stays unfunded.
        """
        async with self.payment_lock.hold(bounty_id):
            payment = await self.get(bounty_id)
            if payment.status != PaymentStatus.UNFUNDED:
                raise InvalidStateError(bounty_id, payment.status, "fund")

            # Stable across retries of this attempt; changes once a failed
            # attempt has moved the bounty back to unfunded
            idempotency_key = f"fund-{bounty_id}-{payment.updated_at:%Y%m%d%H%M%S%f}"
            checkout = await payments.create_bounty_checkout_session(
                bounty_id=bounty_id,
                amount=payment.gross_amount,
                currency=payment.currency,
                success_url=success_url,
                cancel_url=cancel_url,
                idempotency_key=idempotency_key,
            )

            async with self.session_factory() as session:
                moved = await self._set_status(
                    session,
                    bounty_id,
                    PaymentStatus.UNFUNDED,
                    status=PaymentStatus.PENDING.value,
                    checkout_session_id=checkout["id"],
                )
                await session.commit()

        if not moved:
            current = await self.get(bounty_id)
            raise InvalidStateError(bounty_id, current.status, "fund")

        logger.info("bounty_checkout_created", bounty_id=bounty_id, checkout_session_id=checkout["id"])
        return FundResult(checkout_ref=checkout["id"], checkout_url=checkout.get("url"))

    async def confirm(self, event: NormalizedEvent, session: AsyncSession | None = None) -> str:
        """Apply a payment.succeeded / payment.failed event to the bounty.

        Without a session, opens and commits its own.
        """
        if session is None:
            async with self.session_factory() as own_session:
                outcome = await self._confirm(own_session, event)
                await own_session.commit()
                return outcome
        return await self._confirm(session, event)

    async def _confirm(self, session: AsyncSession, event: NormalizedEvent) -> str:
        bounty_id = event.payload.get("bounty_id")
        if not bounty_id:
            raise MissingRequiredMetadata(event.event_type, "bounty_id")

        payment = await session.get(BountyPayment, bounty_id, with_for_update=True)
        if payment is None:
            logger.warning("bounty_payment_unknown", bounty_id=bounty_id)
            raise MissingRequiredMetadata(event.event_type, "bounty_payment")

        session_id = event.payload.get("checkout_session_id")
        intent_id = event.payload.get("payment_intent_id")

        if event.event_type == EventType.PAYMENT_SUCCEEDED:
            if payment.status not in (PaymentStatus.UNFUNDED, PaymentStatus.PENDING):
                return "unchanged"
            payment.status = PaymentStatus.FUNDED.value
            if intent_id:
                payment.provider_payment_id = intent_id
            if session_id and payment.checkout_session_id is None:
                payment.checkout_session_id = session_id
            logger.info("bounty_funded", bounty_id=bounty_id, payment_intent_id=payment.provider_payment_id)
            return "funded"

        if event.event_type == EventType.PAYMENT_FAILED:
            if payment.status != PaymentStatus.PENDING:
                return "unchanged"
            belongs_to_attempt = (session_id is not None and session_id == payment.checkout_session_id) or (
                intent_id is not None and intent_id == payment.provider_payment_id
            )
            if not belongs_to_attempt:
                logger.info(
                    "bounty_payment_failure_for_other_attempt",
                    bounty_id=bounty_id,
                    checkout_session_id=session_id,
                )
                return "unchanged"
            payment.status = PaymentStatus.UNFUNDED.value
            logger.info("bounty_funding_failed", bounty_id=bounty_id, checkout_session_id=session_id)
            return "unfunded"

        return "unchanged"

    async def transfer(self, bounty_id: str, payee_account_id: str) -> BountyPayment:
        """Pay the net amount out to the payee's connected account.

        Allowed exactly once, and only from funded with a positive net.
        """
        async with self.payment_lock.hold(bounty_id):
            payment = await self.get(bounty_id)
            if payment.status != PaymentStatus.FUNDED:
                raise InvalidStateError(bounty_id, payment.status, "transfer")
            if payment.net_amount <= 0:
                raise InvalidStateError(bounty_id, f"funded with net {payment.net_amount}", "transfer")

            transfer = await payments.create_transfer(
                bounty_id=bounty_id,
                amount=payment.net_amount,
                currency=payment.currency,
                destination=payee_account_id,
            )

            async with self.session_factory() as session:
                moved = await self._set_status(
                    session,
                    bounty_id,
                    PaymentStatus.FUNDED,
                    status=PaymentStatus.TRANSFERRED.value,
                    transfer_id=transfer["id"],
                    payee_account_id=payee_account_id,
                )
                await session.commit()

        if not moved:
            logger.error("bounty_transfer_state_lost", bounty_id=bounty_id, transfer_id=transfer["id"])
            current = await self.get(bounty_id)
            raise InvalidStateError(bounty_id, current.status, "transfer")

        logger.info(
            "bounty_transferred",
            bounty_id=bounty_id,
            transfer_id=transfer["id"],
            amount=payment.net_amount,
        )
        return await self.get(bounty_id)

    async def refund(self, bounty_id: str) -> BountyPayment:
        """Return the gross amount to the funder."""
        async with self.payment_lock.hold(bounty_id):
            payment = await self.get(bounty_id)
            if payment.status != PaymentStatus.FUNDED:
                raise InvalidStateError(bounty_id, payment.status, "refund")
            if not payment.provider_payment_id:
                raise InvalidStateError(bounty_id, "funded without a payment reference", "refund")

            refund = await payments.create_refund(bounty_id, payment.provider_payment_id)

            async with self.session_factory() as session:
                moved = await self._set_status(
                    session,
                    bounty_id,
                    PaymentStatus.FUNDED,
                    status=PaymentStatus.REFUNDED.value,
                    refund_id=refund["id"],
                )
                await session.commit()

        if not moved:
            logger.error("bounty_refund_state_lost", bounty_id=bounty_id, refund_id=refund["id"])
            current = await self.get(bounty_id)
            raise InvalidStateError(bounty_id, current.status, "refund")

        logger.info("bounty_refunded", bounty_id=bounty_id, refund_id=refund["id"])
        return await self.get(bounty_id)
