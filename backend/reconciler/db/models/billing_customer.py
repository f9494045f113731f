"""BillingCustomer and PendingAction models: lazy link to the billing ledger."""

import uuid
from enum import StrEnum

from sqlalchemy import JSON, Column, String

from reconciler.db.base import Base, UTCDateTime, utcnow


class CreationState(StrEnum):
    ABSENT = "absent"
    CREATING = "creating"
    PRESENT = "present"


class ActionType(StrEnum):
    PORTAL = "portal"
    USAGE = "usage"
    CHECKOUT = "checkout"


class BillingCustomer(Base):
    __tablename__ = "billing_customers"

    user_id = Column(String(255), primary_key=True)
    external_customer_id = Column(String(255), unique=True, nullable=True)
    creation_state = Column(String(20), nullable=False, default=CreationState.ABSENT.value)
    # When the current creator claimed the row; stale claims may be taken over
    creating_since = Column(UTCDateTime(), nullable=True)

    created_at = Column(UTCDateTime(), nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime(), nullable=False, default=utcnow, onupdate=utcnow)


class PendingAction(Base):
    """Single-slot queue of the last billing action blocked on a missing customer."""

    __tablename__ = "pending_actions"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(255), unique=True, nullable=False, index=True)
    action_type = Column(String(20), nullable=False)
    action_params = Column(JSON, nullable=False, default=dict)
    created_at = Column(UTCDateTime(), nullable=False, default=utcnow)
