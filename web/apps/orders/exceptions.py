"""Error taxonomy for the orders app.

Every error carries a stable ``code`` (returned as ``detail`` in API
responses), a human readable ``message`` and the HTTP status the views use
when the error reaches a client.
"""


class OrderError(Exception):
    """Base class for order errors."""

    code = "ORDER_ERROR"
    status_code = 400

    def __init__(self, message: str | None = None, code: str | None = None):
        self.code = code or self.code
        self.message = message or self.code
        super().__init__(self.message)

    def as_body(self) -> dict:
        return {"detail": self.code, "message": self.message}


class OrderNotFoundError(OrderError):
    code = "ORDER_NOT_FOUND"
    status_code = 404


class FulfillmentValidationError(OrderError):
    """The order cannot be translated into a partner request.

    Not retried automatically: the same order data would fail again.
    """

    code = "FULFILLMENT_VALIDATION_FAILED"
    status_code = 422


class BusinessRuleError(OrderError):
    """A compensating action violates a business rule."""

    code = "BUSINESS_RULE_VIOLATION"
    status_code = 422


class ActionUnavailableError(OrderError):
    """The partner reports the action as unavailable; message is its reason."""

    code = "ACTION_UNAVAILABLE"
    status_code = 409


class RefundFailedError(OrderError):
    """The gateway refund failed after the partner-side change succeeded."""

    code = "REFUND_FAILED"
    status_code = 502


class WebhookSignatureError(OrderError):
    code = "INVALID_SIGNATURE"
    status_code = 400


class IdempotencyConflictError(OrderError):
    code = "IDEMPOTENCY_CONFLICT"
    status_code = 409


class CircuitOpenError(RuntimeError):
    """Raised by HTTP clients when a downstream circuit refuses the call."""
