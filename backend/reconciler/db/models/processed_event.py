"""ProcessedEvent model for webhook idempotency tracking."""

from sqlalchemy import Column, String

from reconciler.db.base import Base, UTCDateTime, utcnow


class ProcessedEvent(Base):
    """Records each (provider, event_id) applied so redelivery is a no-op.

    The composite primary key is the correctness mechanism: a second insert of
    the same delivery fails with IntegrityError.
    """

    __tablename__ = "processed_events"

    provider = Column(String(32), primary_key=True)
    event_id = Column(String(255), primary_key=True)
    event_type = Column(String(64), nullable=False)
    applied_at = Column(UTCDateTime(), nullable=False, default=utcnow, index=True)
