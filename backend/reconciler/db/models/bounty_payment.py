"""BountyPayment model: escrow state for a single bounty's funding."""

from enum import StrEnum

from sqlalchemy import Column, Integer, String

from reconciler.db.base import Base, UTCDateTime, utcnow


class PaymentStatus(StrEnum):
    UNFUNDED = "unfunded"
    PENDING = "pending"
    FUNDED = "funded"
    REFUNDED = "refunded"
    TRANSFERRED = "transferred"


class BountyPayment(Base):
    __tablename__ = "bounty_payments"

    bounty_id = Column(String(255), primary_key=True)

    # Amounts in the currency's minor unit
    gross_amount = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="usd")
    platform_fee = Column(Integer, nullable=False)
    net_amount = Column(Integer, nullable=False)

    status = Column(String(20), nullable=False, default=PaymentStatus.UNFUNDED.value, index=True)

    # Provider references
    checkout_session_id = Column(String(255), nullable=True, unique=True)
    provider_payment_id = Column(String(255), nullable=True)
    transfer_id = Column(String(255), nullable=True)
    refund_id = Column(String(255), nullable=True)
    payee_account_id = Column(String(255), nullable=True)

    created_at = Column(UTCDateTime(), nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime(), nullable=False, default=utcnow, onupdate=utcnow)
