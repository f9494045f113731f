"""Membership state machine driven by subscription webhooks.

States: none -> active -> {active, past_due} -> canceled. Handlers run inside
the applier's transaction and never commit. Every handler is written so the
final row is the same whichever order a subscription's events arrive in:
period ends only move forward, cancellation is terminal for a subscription id,
and failure counts only ever take the maximum reported attempt.
"""

from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from reconciler.core.exceptions import MissingRequiredMetadata
from reconciler.db.base import utcnow
from reconciler.db.models.membership import Membership, MembershipStatus
from reconciler.integrations.payments import fetch_subscription_period_end
from reconciler.webhooks.normalizer import EventType, NormalizedEvent

logger = structlog.get_logger(__name__)

# Stand-in period when neither the event nor the provider reports one
ESTIMATED_PERIOD = timedelta(days=30)


class SubscriptionStateMachine:
    def __init__(
        self,
        clock: Callable[[], datetime] = utcnow,
        period_end_fetcher: Callable[[str], Awaitable[datetime | None]] = fetch_subscription_period_end,
    ):
        self.clock = clock
        self.fetch_period_end = period_end_fetcher

    async def handle(self, session: AsyncSession, event: NormalizedEvent) -> str:
        handlers = {
            EventType.SUBSCRIPTION_ACTIVATED: self.activated,
            EventType.SUBSCRIPTION_RENEWED: self.renewed,
            EventType.PAYMENT_FAILED: self.payment_failed,
            EventType.SUBSCRIPTION_CANCELED: self.canceled,
        }
        return await handlers[event.event_type](session, event.event_type, event.payload)

    # ── Lookups ──

    async def _by_user(self, session: AsyncSession, user_id: str) -> Membership | None:
        result = await session.execute(
            select(Membership).where(Membership.user_id == user_id).with_for_update()
        )
        return result.scalar_one_or_none()

    async def _by_subscription(self, session: AsyncSession, subscription_id: str) -> Membership | None:
        result = await session.execute(
            select(Membership)
            .where(Membership.external_subscription_id == subscription_id)
            .with_for_update()
        )
        return result.scalar_one_or_none()

    async def _resolve(
        self,
        session: AsyncSession,
        event_type: str,
        payload: dict,
        create: bool,
    ) -> Membership | None:
        """Find the membership an event belongs to.

        Looks up by subscription id first, then by the user id in the
        subscription's metadata. Returns None when the user's membership has
        moved on to a different subscription, or when there is no row and
        ``create`` is False.
        """
        subscription_id = payload.get("subscription_id")
        if not subscription_id:
            raise MissingRequiredMetadata(event_type, "subscription_id")

        membership = await self._by_subscription(session, subscription_id)
        if membership is not None:
            return membership

        user_id = payload.get("user_id")
        if not user_id:
            raise MissingRequiredMetadata(event_type, "user_id")

        membership = await self._by_user(session, user_id)
        if membership is None:
            if not create:
                logger.info("membership_not_found", subscription_id=subscription_id, user_id=user_id)
                return None
            membership = Membership(
                user_id=user_id,
                external_subscription_id=subscription_id,
                status=MembershipStatus.NONE.value,
                failed_payment_attempts=0,
                period_end_estimated=False,
            )
            session.add(membership)
            return membership

        if membership.external_subscription_id not in (None, subscription_id):
            logger.info(
                "membership_superseded_subscription_ignored",
                user_id=user_id,
                subscription_id=subscription_id,
                current_subscription_id=membership.external_subscription_id,
            )
            return None

        membership.external_subscription_id = subscription_id
        return membership

    @staticmethod
    def _advance_period_end(membership: Membership, period_end: datetime | None) -> bool:
        """Move current_period_end forward. Returns True if it changed.

        An estimated value is always replaced by the provider's, even when
        the provider's is earlier.
        """
        if period_end is None:
            return False
        if membership.current_period_end is None or membership.period_end_estimated:
            membership.current_period_end = period_end
            membership.period_end_estimated = False
            return True
        if period_end > membership.current_period_end:
            membership.current_period_end = period_end
            return True
        return False

    # ── Transitions ──

    async def activated(self, session: AsyncSession, event_type: str, payload: dict) -> str:
        user_id = payload.get("user_id")
        subscription_id = payload.get("subscription_id")
        if not user_id:
            raise MissingRequiredMetadata(event_type, "user_id")
        if not subscription_id:
            raise MissingRequiredMetadata(event_type, "subscription_id")

        membership = await self._by_user(session, user_id)
        if membership is None:
            membership = Membership(
                user_id=user_id,
                status=MembershipStatus.NONE.value,
                failed_payment_attempts=0,
                period_end_estimated=False,
            )
            session.add(membership)
        elif membership.external_subscription_id == subscription_id:
            if membership.status == MembershipStatus.CANCELED:
                logger.info(
                    "membership_activation_after_cancel_ignored",
                    user_id=user_id,
                    subscription_id=subscription_id,
                )
                return "ignored"
        elif membership.external_subscription_id is not None:
            # A new subscription replaces whatever the user had before
            logger.info(
                "membership_subscription_replaced",
                user_id=user_id,
                previous_subscription_id=membership.external_subscription_id,
                subscription_id=subscription_id,
            )
            membership.status = MembershipStatus.NONE.value
            membership.current_period_end = None
            membership.period_end_estimated = False
            membership.failed_payment_attempts = 0

        membership.external_subscription_id = subscription_id
        if payload.get("plan_tier"):
            membership.plan_tier = payload["plan_tier"]

        period_end = payload.get("period_end")
        if period_end is None:
            period_end = await self.fetch_period_end(subscription_id)
        self._advance_period_end(membership, period_end)

        if membership.current_period_end is None:
            membership.current_period_end = self.clock() + ESTIMATED_PERIOD
            membership.period_end_estimated = True
            logger.warning(
                "membership_period_end_estimated",
                user_id=user_id,
                subscription_id=subscription_id,
                period_end=membership.current_period_end.isoformat(),
            )

        if membership.status == MembershipStatus.NONE:
            membership.status = MembershipStatus.ACTIVE.value

        logger.info(
            "membership_activated",
            user_id=user_id,
            subscription_id=subscription_id,
            plan_tier=membership.plan_tier,
            status=membership.status,
        )
        return "activated"

    async def renewed(self, session: AsyncSession, event_type: str, payload: dict) -> str:
        membership = await self._resolve(session, event_type, payload, create=True)
        if membership is None:
            return "ignored"
        if membership.status == MembershipStatus.CANCELED:
            return "ignored"

        if payload.get("plan_tier"):
            membership.plan_tier = payload["plan_tier"]

        advanced = self._advance_period_end(membership, payload.get("period_end"))
        if membership.status == MembershipStatus.NONE:
            membership.status = MembershipStatus.ACTIVE.value

        if not advanced:
            return "unchanged"

        membership.failed_payment_attempts = 0
        if membership.status == MembershipStatus.PAST_DUE:
            membership.status = MembershipStatus.ACTIVE.value
            logger.info("membership_recovered", user_id=membership.user_id)

        logger.info(
            "membership_renewed",
            user_id=membership.user_id,
            period_end=membership.current_period_end.isoformat(),
        )
        return "renewed"

    async def payment_failed(self, session: AsyncSession, event_type: str, payload: dict) -> str:
        membership = await self._resolve(session, event_type, payload, create=False)
        if membership is None or membership.status == MembershipStatus.CANCELED:
            return "ignored"

        billed_period_end = payload.get("period_end")
        if (
            billed_period_end is not None
            and membership.current_period_end is not None
            and not membership.period_end_estimated
            and billed_period_end <= membership.current_period_end
        ):
            # That period was paid after this failure was reported
            logger.info(
                "membership_stale_payment_failure_ignored",
                user_id=membership.user_id,
                billed_period_end=billed_period_end.isoformat(),
            )
            return "ignored"

        attempts = int(payload.get("attempt_count") or 0)
        threshold = int(payload.get("threshold") or 1)
        membership.failed_payment_attempts = max(membership.failed_payment_attempts or 0, attempts)
        provider_past_due = bool(payload.get("provider_past_due"))

        if (provider_past_due or membership.failed_payment_attempts >= threshold) and membership.status in (
            MembershipStatus.ACTIVE,
            MembershipStatus.NONE,
        ):
            membership.status = MembershipStatus.PAST_DUE.value
            logger.warning(
                "membership_past_due",
                user_id=membership.user_id,
                attempts=membership.failed_payment_attempts,
                reported_by_provider=provider_past_due,
            )
            return "past_due"

        logger.info(
            "membership_payment_failed",
            user_id=membership.user_id,
            attempts=membership.failed_payment_attempts,
            threshold=threshold,
        )
        return "recorded"

    async def canceled(self, session: AsyncSession, event_type: str, payload: dict) -> str:
        membership = await self._resolve(session, event_type, payload, create=True)
        if membership is None:
            return "ignored"

        # Access continues until current_period_end; readers enforce that
        membership.status = MembershipStatus.CANCELED.value
        logger.info(
            "membership_canceled",
            user_id=membership.user_id,
            subscription_id=membership.external_subscription_id,
        )
        return "canceled"


async def find_unconfirmed_estimates(
    session_factory: async_sessionmaker[AsyncSession],
    now: datetime | None = None,
) -> list[Membership]:
    """Active memberships whose estimated period end passed without a renewal."""
    now = now or utcnow()
    async with session_factory() as session:
        result = await session.execute(
            select(Membership).where(
                Membership.period_end_estimated.is_(True),
                Membership.status == MembershipStatus.ACTIVE.value,
                Membership.current_period_end < now,
            )
        )
        return list(result.scalars().all())


def has_access(membership: Membership | None, now: datetime | None = None) -> bool:
    """Whether a membership currently grants paid access.

    Canceled and past-due memberships keep access until the paid period ends.
    """
    if membership is None or membership.current_period_end is None:
        return False
    if membership.status == MembershipStatus.NONE:
        return False
    return membership.current_period_end > (now or utcnow())
