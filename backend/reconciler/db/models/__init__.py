"""Re-export all models so Base.metadata sees them."""

from reconciler.db.models.billing_customer import BillingCustomer, PendingAction
from reconciler.db.models.bounty_payment import BountyPayment
from reconciler.db.models.installation_binding import InstallationBinding
from reconciler.db.models.membership import Membership
from reconciler.db.models.processed_event import ProcessedEvent

__all__ = [
    "BillingCustomer",
    "BountyPayment",
    "InstallationBinding",
    "Membership",
    "PendingAction",
    "ProcessedEvent",
]
