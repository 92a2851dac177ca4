"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.
"""

from app.models.domain import OrderStatus, Provider


class PaymentError(Exception):
    """Base exception for all payment orchestration errors."""

    pass


class ValidationError(PaymentError):
    """Raised when a payment request is invalid. Never retried."""

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        self.message = message
        super().__init__(f"Invalid {field}: {message}")


class ProviderNotConfiguredError(PaymentError):
    """Raised when a provider has no usable configuration."""

    def __init__(self, provider: Provider) -> None:
        self.provider = provider
        super().__init__(f"Payment provider not configured: {provider.value}")


class CredentialError(PaymentError):
    """Raised when a provider token cannot be obtained."""

    def __init__(self, provider: Provider, message: str) -> None:
        self.provider = provider
        self.message = message
        super().__init__(f"Credential error for {provider.value}: {message}")


class GatewayError(PaymentError):
    """Raised when a provider rejects a request or cannot be reached."""

    def __init__(self, provider: Provider, message: str, status_code: int | None = None) -> None:
        self.provider = provider
        self.message = message
        self.status_code = status_code
        super().__init__(f"Gateway error from {provider.value}: {message}")


class GatewayAuthError(GatewayError):
    """Raised when a provider keeps rejecting our credentials after a refresh."""

    def __init__(self, provider: Provider, message: str) -> None:
        super().__init__(provider, message, status_code=401)


class InvalidSignatureError(PaymentError):
    """Raised when a webhook fails validation. Never reconciled."""

    def __init__(self, provider: Provider, message: str) -> None:
        self.provider = provider
        self.message = message
        super().__init__(f"Invalid webhook from {provider.value}: {message}")


class InvalidStateError(PaymentError):
    """Raised when an operation is not allowed in the payment's current state."""

    def __init__(self, payment_id: str, status: str) -> None:
        self.payment_id = payment_id
        self.status = status
        super().__init__(f"Payment {payment_id} is already {status}")


class PollTimeoutError(PaymentError):
    """Raised when status polling exhausts its budget. Not a payment failure."""

    def __init__(self, provider: Provider, provider_ref: str, waited_seconds: float) -> None:
        self.provider = provider
        self.provider_ref = provider_ref
        self.waited_seconds = waited_seconds
        super().__init__(
            f"Payment verification incomplete for {provider.value}/{provider_ref} "
            f"after {waited_seconds:.1f}s"
        )


class PollCancelledError(PaymentError):
    """Raised when the caller of a poll went away before a terminal status."""

    def __init__(self, provider: Provider, provider_ref: str) -> None:
        self.provider = provider
        self.provider_ref = provider_ref
        super().__init__(f"Polling cancelled for {provider.value}/{provider_ref}")


class ReconciliationConflict(PaymentError):
    """
    Describes an event that contradicts an order's terminal state.

    Recorded for manual review and returned as data; never raised to HTTP callers.
    """

    def __init__(
        self,
        order_ref: str,
        order_status: OrderStatus,
        provider: Provider,
        provider_payment_id: str,
        reported_status: str,
    ) -> None:
        self.order_ref = order_ref
        self.order_status = order_status
        self.provider = provider
        self.provider_payment_id = provider_payment_id
        self.reported_status = reported_status
        super().__init__(
            f"Order {order_ref} is {order_status.value} but {provider.value} reported "
            f"{reported_status} for {provider_payment_id}"
        )
