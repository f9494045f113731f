class ReconcilerError(Exception):
    """Base exception for the reconciliation engine."""

    pass


class InvalidSignature(ReconcilerError):
    """Raised when an inbound webhook fails authenticity checks or cannot be parsed."""

    pass


class UnknownEventType(ReconcilerError):
    """Raised for provider event types outside the internal vocabulary."""

    def __init__(self, provider: str, event_type: str):
        self.provider = provider
        self.event_type = event_type
        super().__init__(f"Unknown {provider} event type '{event_type}'")


class MissingRequiredMetadata(ReconcilerError):
    """Raised when an event lacks identifiers it will never gain on redelivery."""

    def __init__(self, event_type: str, missing: str):
        self.event_type = event_type
        self.missing = missing
        super().__init__(f"{event_type} is missing required metadata: {missing}")


class InvalidStateError(ReconcilerError):
    """Raised when a transition is attempted from a state that forbids it."""

    def __init__(self, entity_id: str, current: str, attempted: str):
        self.entity_id = entity_id
        self.current = current
        self.attempted = attempted
        super().__init__(f"Cannot {attempted} '{entity_id}' while it is {current}")


class ExternalConflict(ReconcilerError):
    """Raised when an external API reports the entity already exists or is bound."""

    def __init__(self, message: str, body: dict | None = None):
        self.body = body or {}
        super().__init__(message)


class TransientExternalFailure(ReconcilerError):
    """Raised on timeouts and 5xx from a provider; no local mutation has happened."""

    def __init__(self, provider: str, message: str):
        self.provider = provider
        super().__init__(f"{provider}: {message}")


class CustomerNotFound(ReconcilerError):
    """Raised when the billing ledger has no customer for an external id."""

    pass


class PaymentLockError(ReconcilerError):
    """Raised when another payment operation holds the lock for a bounty."""

    pass


class GitHubAPIError(ReconcilerError):
    """Raised when a GitHub App API call fails."""

    pass


class BountyNotFound(ReconcilerError):
    """Raised when no payment record exists for a bounty."""

    pass


class ExternalRejected(ReconcilerError):
    """Raised when a provider refuses a request; retrying it unchanged cannot succeed."""

    def __init__(self, provider: str, message: str, status: int | None = None, code: str | None = None):
        self.provider = provider
        self.status = status
        self.code = code
        super().__init__(f"{provider} rejected the request: {message}")
