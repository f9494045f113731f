"""Lazy creation of billing-ledger customers.

A user's ledger customer is created on first need rather than at sign-up.
Creation is claimed through the billing_customers row (absent -> creating ->
present) so concurrent requests create at most one ledger customer. Billing
actions that arrive before the customer exists are parked in a single
per-user slot and replayed once creation completes.
"""

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from reconciler.core.config import get_settings
from reconciler.core.exceptions import ExternalConflict, ReconcilerError
from reconciler.db.base import utcnow
from reconciler.db.models.billing_customer import (
    ActionType,
    BillingCustomer,
    CreationState,
    PendingAction,
)
from reconciler.integrations.ledger import LedgerClient

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ActionResult:
    status: str  # "completed", "deferred" or "failed"
    action_type: str
    data: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class EnsureOutcome:
    customer: BillingCustomer
    replayed: ActionResult | None = None


class CustomerReconciler:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ledger: LedgerClient | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.ledger = ledger or LedgerClient()
        self.clock = clock

    async def get(self, user_id: str) -> BillingCustomer | None:
        async with self.session_factory() as session:
            return await session.get(BillingCustomer, user_id)

    # ── Creation ──

    async def _claim(self, user_id: str) -> bool:
        """Try to become the one request that creates this user's customer."""
        now = self.clock()
        async with self.session_factory() as session:
            session.add(
                BillingCustomer(
                    user_id=user_id,
                    creation_state=CreationState.CREATING.value,
                    creating_since=now,
                )
            )
            try:
                await session.commit()
                return True
            except IntegrityError:
                await session.rollback()

            stale_before = now - timedelta(seconds=get_settings().customer_creation_stale_seconds)
            result = await session.execute(
                update(BillingCustomer)
                .where(
                    BillingCustomer.user_id == user_id,
                    or_(
                        BillingCustomer.creation_state == CreationState.ABSENT.value,
                        and_(
                            BillingCustomer.creation_state == CreationState.CREATING.value,
                            BillingCustomer.creating_since < stale_before,
                        ),
                    ),
                )
                .values(creation_state=CreationState.CREATING.value, creating_since=now, updated_at=now)
            )
            await session.commit()
            return result.rowcount == 1

    async def _release_claim(self, user_id: str) -> None:
        async with self.session_factory() as session:
            await session.execute(
                update(BillingCustomer)
                .where(
                    BillingCustomer.user_id == user_id,
                    BillingCustomer.creation_state == CreationState.CREATING.value,
                )
                .values(creation_state=CreationState.ABSENT.value, creating_since=None, updated_at=self.clock())
            )
            await session.commit()

    async def _create(self, user_id: str, email: str | None, name: str | None) -> BillingCustomer:
        try:
            try:
                data = await self.ledger.create_customer(user_id, email=email, name=name)
            except ExternalConflict:
                # Created by an earlier attempt that died before recording it
                logger.info("billing_customer_already_exists", user_id=user_id)
                data = await self.ledger.get_customer(user_id)
        except Exception:
            await self._release_claim(user_id)
            logger.warning("billing_customer_create_failed", user_id=user_id)
            raise

        external_id = (data or {}).get("id") or user_id
        async with self.session_factory() as session:
            await session.execute(
                update(BillingCustomer)
                .where(BillingCustomer.user_id == user_id)
                .values(
                    creation_state=CreationState.PRESENT.value,
                    external_customer_id=external_id,
                    creating_since=None,
                    updated_at=self.clock(),
                )
            )
            await session.commit()

        logger.info("billing_customer_created", user_id=user_id, external_customer_id=external_id)
        return await self.get(user_id)

    async def _wait_for_creation(self, user_id: str) -> BillingCustomer | None:
        """Poll while another request creates the customer."""
        settings = get_settings()
        deadline = time.monotonic() + settings.customer_creation_wait_seconds
        while True:
            customer = await self.get(user_id)
            if customer is None or customer.creation_state != CreationState.CREATING:
                return customer
            if time.monotonic() >= deadline:
                logger.info("billing_customer_wait_timeout", user_id=user_id)
                return customer
            await asyncio.sleep(settings.customer_creation_poll_seconds)

    async def ensure_with_replay(
        self,
        user_id: str,
        email: str | None = None,
        name: str | None = None,
    ) -> EnsureOutcome:
        """Make sure the user has a ledger customer, then replay any parked action."""
        customer = await self.get(user_id)
        if customer is None or customer.creation_state != CreationState.PRESENT:
            if await self._claim(user_id):
                customer = await self._create(user_id, email, name)
            else:
                customer = await self._wait_for_creation(user_id)

        if customer is None or customer.creation_state != CreationState.PRESENT:
            return EnsureOutcome(customer=customer)

        replayed = await self.replay(customer)
        return EnsureOutcome(customer=customer, replayed=replayed)

    async def ensure(self, user_id: str, email: str | None = None, name: str | None = None) -> BillingCustomer:
        outcome = await self.ensure_with_replay(user_id, email, name)
        return outcome.customer

    async def ensure_in_background(self, user_id: str, email: str | None = None, name: str | None = None) -> None:
        """BackgroundTasks entry point; failures are logged since nobody awaits the result."""
        try:
            await self.ensure(user_id, email, name)
        except ReconcilerError as exc:
            logger.error("billing_customer_background_ensure_failed", user_id=user_id, error=str(exc))

    # ── Pending actions ──

    async def enqueue(self, user_id: str, action_type: ActionType, params: dict | None = None) -> None:
        """Park an action in the user's single slot, replacing any older one."""
        for _ in range(2):
            async with self.session_factory() as session:
                await session.execute(delete(PendingAction).where(PendingAction.user_id == user_id))
                session.add(
                    PendingAction(
                        user_id=user_id,
                        action_type=ActionType(action_type).value,
                        action_params=params or {},
                        created_at=self.clock(),
                    )
                )
                try:
                    await session.commit()
                except IntegrityError:
                    # A concurrent enqueue filled the slot between delete and insert
                    await session.rollback()
                    continue
            logger.info("billing_action_deferred", user_id=user_id, action_type=action_type)
            return
        raise ReconcilerError(f"Could not enqueue {action_type} for {user_id}")

    async def _consume(self, user_id: str) -> PendingAction | None:
        """Take the parked action, if any. Only one caller can win it."""
        async with self.session_factory() as session:
            result = await session.execute(select(PendingAction).where(PendingAction.user_id == user_id))
            action = result.scalar_one_or_none()
            if action is None:
                return None
            deleted = await session.execute(delete(PendingAction).where(PendingAction.id == action.id))
            await session.commit()
        if deleted.rowcount != 1:
            return None
        return action

    async def replay(self, customer: BillingCustomer) -> ActionResult | None:
        action = await self._consume(customer.user_id)
        if action is None:
            return None

        try:
            result = await self._execute(customer, ActionType(action.action_type), action.action_params or {})
        except ReconcilerError as exc:
            logger.error(
                "billing_action_replay_failed",
                user_id=customer.user_id,
                action_type=action.action_type,
                error=str(exc),
            )
            return ActionResult(status="failed", action_type=action.action_type, data={"error": str(exc)})

        logger.info("billing_action_replayed", user_id=customer.user_id, action_type=action.action_type)
        return result

    # ── Billing actions ──

    async def _execute(self, customer: BillingCustomer, action_type: ActionType, params: dict) -> ActionResult:
        customer_id = customer.external_customer_id

        if action_type == ActionType.PORTAL:
            data = await self.ledger.create_portal(customer_id)
            return ActionResult(
                status="completed",
                action_type=action_type.value,
                data={"url": data.get("url") or data.get("portal_url")},
            )

        if action_type == ActionType.USAGE:
            await self.ledger.track_usage(customer_id, params["event"], params.get("metadata"))
            return ActionResult(status="completed", action_type=action_type.value)

        if action_type == ActionType.CHECKOUT:
            data = await self.ledger.create_checkout(
                customer_id,
                params["plan_slug"],
                params["success_url"],
                metadata={"user_id": customer.user_id, "plan_slug": params["plan_slug"]},
            )
            return ActionResult(
                status="completed",
                action_type=action_type.value,
                data={"checkout_url": data.get("url") or data.get("checkout_url")},
            )

        raise ValueError(f"Unsupported billing action: {action_type}")

    async def _run_or_defer(self, user_id: str, action_type: ActionType, params: dict) -> ActionResult:
        customer = await self.get(user_id)
        if customer is None or customer.creation_state != CreationState.PRESENT:
            await self.enqueue(user_id, action_type, params)
            return ActionResult(status="deferred", action_type=action_type.value)
        return await self._execute(customer, action_type, params)

    async def open_billing_portal(self, user_id: str) -> ActionResult:
        return await self._run_or_defer(user_id, ActionType.PORTAL, {})

    async def track_usage(self, user_id: str, event: str, metadata: dict | None = None) -> ActionResult:
        return await self._run_or_defer(user_id, ActionType.USAGE, {"event": event, "metadata": metadata or {}})

    async def start_checkout(self, user_id: str, plan_slug: str, success_url: str) -> ActionResult:
        return await self._run_or_defer(
            user_id,
            ActionType.CHECKOUT,
            {"plan_slug": plan_slug, "success_url": success_url},
        )
