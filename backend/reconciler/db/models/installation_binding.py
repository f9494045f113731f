"""InstallationBinding model: which organization owns a GitHub App installation."""

from enum import StrEnum

from sqlalchemy import JSON, BigInteger, Column, String

from reconciler.db.base import Base, UTCDateTime, utcnow


class BindingSource(StrEnum):
    WEBHOOK = "webhook"
    CALLBACK = "callback"


class InstallationBinding(Base):
    __tablename__ = "installation_bindings"

    installation_id = Column(BigInteger, primary_key=True, autoincrement=False)
    # GitHub account id of the installer; null when the webhook sender was unknown
    owning_account_id = Column(String(64), nullable=True, index=True)
    organization_id = Column(String(255), nullable=True, index=True)
    account_login = Column(String(255), nullable=True)
    repository_ids = Column(JSON, nullable=False, default=list)
    source = Column(String(20), nullable=False)

    created_at = Column(UTCDateTime(), nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime(), nullable=False, default=utcnow, onupdate=utcnow)
