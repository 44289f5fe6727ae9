"""Custom exceptions for linkist."""

from typing import Any


class LinkistError(Exception):
    """Base exception for all linkist errors."""

    def extra(self) -> dict[str, Any]:
        """Additional fields included in the API error body."""
        return {}


class InvalidSchemaVersionError(LinkistError):
    """Raised when a data file has an unsupported schema version."""

    def __init__(self, found: int, supported: int):
        self.found = found
        self.supported = supported
        super().__init__(
            f"Unsupported schema version {found}. This service supports version {supported}."
        )


class InvalidSettingsError(LinkistError):
    """Raised when a settings update has the wrong shape."""

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Invalid settings: {path} must be an object")


class CheckoutValidationError(LinkistError):
    """Raised when checkout form fields fail validation."""

    def __init__(self, field_errors: dict[str, str]):
        self.field_errors = field_errors
        fields = ", ".join(sorted(field_errors))
        super().__init__(f"Invalid checkout fields: {fields}")

    def extra(self) -> dict[str, Any]:
        return {"field_errors": self.field_errors}


class InvalidCardConfigError(LinkistError):
    """Raised when a card configuration breaks its invariants."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Invalid card configuration: {reason}")


class MissingCardConfigError(LinkistError):
    """Raised when checkout is attempted without a card configuration."""

    redirect_to = "/nfc/configure"

    def __init__(self, draft_id: str):
        self.draft_id = draft_id
        super().__init__(f"Draft {draft_id} has no card configuration")

    def extra(self) -> dict[str, Any]:
        return {"redirect_to": self.redirect_to}


class MissingOrderPayloadError(LinkistError):
    """Raised when payment is attempted before checkout was submitted."""

    redirect_to = "/nfc/checkout"

    def __init__(self, draft_id: str):
        self.draft_id = draft_id
        super().__init__(f"Draft {draft_id} has no submitted order")

    def extra(self) -> dict[str, Any]:
        return {"redirect_to": self.redirect_to}


class DraftNotFoundError(LinkistError):
    """Raised when a checkout draft doesn't exist."""

    def __init__(self, draft_id: str):
        self.draft_id = draft_id
        super().__init__(f"Checkout draft not found: {draft_id}")


class OrderNotFoundError(LinkistError):
    """Raised when an order ID doesn't exist."""

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order not found: {order_id}")


class DuplicateOrderError(LinkistError):
    """Raised when an order was already created for an idempotency key or draft."""

    def __init__(self, order_id: str, reason: str = "order already created"):
        self.order_id = order_id
        super().__init__(f"Duplicate order submission ({reason}): {order_id}")

    def extra(self) -> dict[str, Any]:
        return {"order_id": self.order_id}


class PricingMismatchError(LinkistError):
    """Raised when a client-supplied total differs from the server calculation."""

    def __init__(self, expected: str, received: str):
        self.expected = expected
        self.received = received
        super().__init__(f"Pricing mismatch: expected total {expected}, received {received}")


class InvalidVoucherError(LinkistError):
    """Raised when a voucher is required to pay but isn't valid."""

    def __init__(self, code: str):
        self.code = code
        super().__init__(f"Invalid voucher code: {code}")


class MissingPaymentDetailsError(LinkistError):
    """Raised when a payment method is missing a required field."""

    def __init__(self, method: str, fields: list[str]):
        self.method = method
        self.fields = fields
        super().__init__(f"Missing {method} payment details: {', '.join(fields)}")

    def extra(self) -> dict[str, Any]:
        return {"fields": self.fields}


class IncompletePaymentError(LinkistError):
    """Raised when a partial voucher is used without a monetary method."""

    def __init__(self, discount_percent: int):
        self.discount_percent = discount_percent
        super().__init__(
            f"Voucher covers {discount_percent}% of the order. "
            "Choose card or UPI to pay the remaining amount."
        )


class PaymentFailedError(LinkistError):
    """Raised when the payment provider rejects a charge."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Payment failed: {reason}")


class PaymentProviderNotConfiguredError(LinkistError):
    """Raised when a payment provider is used without credentials."""

    def __init__(self, provider: str):
        self.provider = provider
        super().__init__(f"Payment provider not configured: {provider}")


class WebhookSignatureError(LinkistError):
    """Raised when a provider callback can't be authenticated."""

    def __init__(self, reason: str):
        super().__init__(f"Webhook rejected: {reason}")


class InvalidStatusError(LinkistError):
    """Raised when an unknown order status is requested."""

    def __init__(self, status: str):
        self.status = status
        super().__init__(f"Unknown order status: {status}")


class IllegalTransitionError(LinkistError):
    """Raised when an order status change isn't allowed."""

    def __init__(self, current: str, requested: str):
        self.current = current
        self.requested = requested
        super().__init__(f"Cannot move order from '{current}' to '{requested}'")


class InvalidEmailTypeError(LinkistError):
    """Raised when an unknown email type is requested."""

    def __init__(self, email_type: str):
        self.email_type = email_type
        super().__init__(f"Unknown email type: {email_type}")


class EmailDeliveryError(LinkistError):
    """Raised when an order email could not be sent."""

    def __init__(self, email_type: str, reason: str):
        self.email_type = email_type
        self.reason = reason
        super().__init__(f"Failed to send {email_type} email: {reason}")


class NotAuthenticatedError(LinkistError):
    """Raised when a request carries no valid credentials."""

    def __init__(self):
        super().__init__("Not authenticated")


class NotAuthorizedError(LinkistError):
    """Raised when the caller lacks the required role."""

    def __init__(self, role: str):
        self.role = role
        super().__init__(f"Role '{role}' cannot access this resource")
