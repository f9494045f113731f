"""Membership model: the authoritative subscription record for a user."""

from enum import StrEnum

from sqlalchemy import Boolean, Column, Integer, String

from reconciler.db.base import Base, UTCDateTime, utcnow


class MembershipStatus(StrEnum):
    NONE = "none"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


class Membership(Base):
    __tablename__ = "memberships"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(255), unique=True, nullable=False, index=True)

    plan_tier = Column(String(64), nullable=True)
    external_subscription_id = Column(String(255), nullable=True, index=True)
    current_period_end = Column(UTCDateTime(), nullable=True)
    status = Column(String(20), nullable=False, default=MembershipStatus.NONE.value)

    # Highest invoice attempt count reported for the unpaid period
    failed_payment_attempts = Column(Integer, nullable=False, default=0)
    # current_period_end is a now+30d stand-in awaiting the provider's value
    period_end_estimated = Column(Boolean, nullable=False, default=False)

    created_at = Column(UTCDateTime(), nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime(), nullable=False, default=utcnow, onupdate=utcnow)
