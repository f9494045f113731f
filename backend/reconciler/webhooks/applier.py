"""Apply each normalized event exactly once.

The ProcessedEvent insert and the domain mutation share one transaction: a
redelivered event hits the (provider, event_id) primary key and is skipped,
and a crash before commit leaves nothing behind, so the provider's redelivery
applies the event in full.
"""

from dataclasses import dataclass
from datetime import datetime

import structlog
from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from reconciler.core.exceptions import ExternalRejected, MissingRequiredMetadata, UnknownEventType
from reconciler.db.models.processed_event import ProcessedEvent
from reconciler.services.escrow_service import EscrowOrchestrator
from reconciler.services.installation_service import InstallationResolver
from reconciler.services.subscription_service import SubscriptionStateMachine
from reconciler.webhooks.normalizer import EventScope, EventType, NormalizedEvent

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ApplyResult:
    applied: bool
    event_type: EventType
    outcome: str | None = None


class MutationApplier:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        subscriptions: SubscriptionStateMachine | None = None,
        escrow: EscrowOrchestrator | None = None,
        installations: InstallationResolver | None = None,
    ):
        self.session_factory = session_factory
        self.subscriptions = subscriptions or SubscriptionStateMachine()
        self.escrow = escrow or EscrowOrchestrator(session_factory)
        self.installations = installations or InstallationResolver(session_factory)

    async def _dispatch(self, session: AsyncSession, event: NormalizedEvent) -> str:
        if event.event_type == EventType.NOOP:
            return "noop"
        if event.scope == EventScope.SUBSCRIPTION:
            return await self.subscriptions.handle(session, event)
        if event.scope == EventScope.BOUNTY:
            return await self.escrow.confirm(event, session=session)
        if event.scope == EventScope.INSTALLATION:
            return await self.installations.handle(session, event)
        raise UnknownEventType(event.provider, event.event_type)

    async def apply(self, event: NormalizedEvent) -> ApplyResult:
        """Record and apply an event unless it has been applied before.

        Raises:
            TransientExternalFailure: nothing was recorded; the delivery must be retried

        Events that can never apply (missing metadata, or the provider rejecting
        a lookup) are recorded with outcome "dropped".
        """
        log = logger.bind(provider=event.provider, event_id=event.event_id, event_type=event.event_type.value)

        async with self.session_factory() as session:
            session.add(
                ProcessedEvent(
                    provider=event.provider,
                    event_id=event.event_id,
                    event_type=event.event_type.value,
                )
            )
            try:
                await session.flush()
            except IntegrityError:
                await session.rollback()
                log.info("webhook_duplicate_ignored")
                return ApplyResult(applied=False, event_type=event.event_type)

            # Only the savepoint is rolled back on a drop, so the ProcessedEvent row
            # stays claimed by this transaction
            try:
                async with session.begin_nested():
                    outcome = await self._dispatch(session, event)
            except MissingRequiredMetadata as exc:
                # Redelivery will carry the same payload; record it and move on
                log.warning("webhook_missing_metadata_dropped", missing=exc.missing)
                outcome = "dropped"
            except ExternalRejected as exc:
                log.warning(
                    "webhook_provider_rejected_dropped",
                    provider_status=exc.status,
                    provider_code=exc.code,
                    error=str(exc),
                )
                outcome = "dropped"
            except Exception:
                await session.rollback()
                raise

            await session.commit()

        log.info("webhook_applied", outcome=outcome, entity_id=event.entity_id)
        return ApplyResult(applied=True, event_type=event.event_type, outcome=outcome)


async def prune_processed_events(
    session_factory: async_sessionmaker[AsyncSession],
    older_than: datetime,
) -> int:
    """Delete idempotency records applied before ``older_than``."""
    async with session_factory() as session:
        result = await session.execute(delete(ProcessedEvent).where(ProcessedEvent.applied_at < older_than))
        await session.commit()
    return result.rowcount or 0
