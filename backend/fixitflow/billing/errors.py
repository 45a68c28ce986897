"""Billing and entitlement exceptions.

Route handlers translate these into HTTP responses; "not entitled" is never an
exception, it is a plain ``False`` from the evaluator.
"""


class BillingError(Exception):
    """Base exception for the entitlement/subscription engine."""

    pass


class ValidationError(BillingError):
    """Bad plan name, unsupported provider, or otherwise malformed request."""

    pass


class AlreadyEntitledError(BillingError):
    """Principal is not eligible (e.g. a second trial start)."""

    pass


class StateConflictError(BillingError):
    """A concurrent write won the race for the same subscription row."""

    pass


class TokenDecodeError(BillingError):
    """Anonymous entitlement token is malformed, tampered, or incomplete."""

    pass


class ProviderError(BillingError):
    """A payment provider rejected a request."""

    def __init__(self, message: str, provider: str | None = None):
        super().__init__(message)
        self.provider = provider


class ProviderUnavailableError(ProviderError):
    """A payment provider could not be reached (network error, timeout, 5xx)."""

    pass


class InvalidSignatureError(ProviderError):
    """Webhook authenticity check failed. Nothing may be applied."""

    pass


class UnknownEventError(ProviderError):
    """Webhook event type the engine does not act on. Acknowledged, not retried."""

    def __init__(self, event_type: str, provider: str | None = None):
        super().__init__(f"Unhandled webhook event type: {event_type}", provider)
        self.event_type = event_type
