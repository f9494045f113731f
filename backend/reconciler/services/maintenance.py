"""MaintenanceLoop: periodic housekeeping for the reconciliation tables.

Runs as an asyncio.Task started in the application lifespan. Each pass:
  1. deletes ProcessedEvent rows older than processed_event_retention_days
  2. reports memberships whose estimated period end passed with no renewal,
     so an operator can check the subscription with the provider

Failures in one pass are logged and the loop keeps running.
"""

import asyncio
from collections.abc import Callable
from datetime import datetime, timedelta

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from reconciler.core.config import get_settings
from reconciler.db.base import utcnow
from reconciler.services.subscription_service import find_unconfirmed_estimates
from reconciler.webhooks.applier import prune_processed_events

logger = structlog.get_logger(__name__)


class MaintenanceLoop:
    """Usage:
        loop = MaintenanceLoop(get_session_factory())
        task = asyncio.create_task(loop.run())
        ...
        task.cancel()
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        interval_seconds: float | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        settings = get_settings()
        self.session_factory = session_factory
        self.interval_seconds = interval_seconds or settings.maintenance_interval_seconds
        self.retention = timedelta(days=settings.processed_event_retention_days)
        self.clock = clock

    async def run_once(self) -> dict:
        now = self.clock()

        pruned = await prune_processed_events(self.session_factory, now - self.retention)
        if pruned:
            logger.info("processed_events_pruned", count=pruned)

        unconfirmed = await find_unconfirmed_estimates(self.session_factory, now)
        for membership in unconfirmed:
            logger.warning(
                "membership_period_estimate_unconfirmed",
                user_id=membership.user_id,
                subscription_id=membership.external_subscription_id,
                estimated_period_end=membership.current_period_end.isoformat(),
            )

        return {"pruned": pruned, "unconfirmed_estimates": len(unconfirmed)}

    async def run(self) -> None:
        """Loop forever; intended for ``asyncio.create_task(loop.run())``."""
        logger.info("maintenance_loop_started", interval_seconds=self.interval_seconds)
        while True:
            try:
                await self.run_once()
            except SQLAlchemyError as exc:
                logger.error("maintenance_pass_failed", error=str(exc), error_type=type(exc).__name__)
            await asyncio.sleep(self.interval_seconds)
