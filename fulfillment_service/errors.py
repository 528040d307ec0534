# errors.py
from typing import Optional


class FulfillmentError(Exception):
    status_code = 400
    code = "FULFILLMENT_ERROR"

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict:
        return {"detail": self.message, "code": self.code, **self.context}


class NotFound(FulfillmentError):
    status_code = 404
    code = "NOT_FOUND"


class IllegalTransition(FulfillmentError):
    status_code = 400
    code = "INVALID_STATUS_TRANSITION"


class PaymentRequired(IllegalTransition):
    code = "PAYMENT_NOT_CAPTURED"


class VersionConflict(FulfillmentError):
    status_code = 409
    code = "VERSION_CONFLICT"

    def __init__(self, entity: str, entity_id: str, expected: int, actual: int):
        super().__init__(
            f"Stale write on {entity} {entity_id}: expected version {expected}, found {actual}",
            expected_version=expected,
            current_version=actual,
        )


class DriverMismatch(FulfillmentError):
    status_code = 403
    code = "DRIVER_MISMATCH"


class DriverUnavailable(FulfillmentError):
    status_code = 409
    code = "DRIVER_UNAVAILABLE"


class OfferExpired(FulfillmentError):
    status_code = 410
    code = "OFFER_EXPIRED"


class NoDriverAvailable(FulfillmentError):
    """Dispatch exhausted its candidates. Surfaces as a cancellation event."""
    status_code = 409
    code = "NO_DRIVER_AVAILABLE"


class PaymentAmountMismatch(FulfillmentError):
    status_code = 422
    code = "PAYMENT_AMOUNT_MISMATCH"


class PaymentNotCaptured(FulfillmentError):
    status_code = 400
    code = "PAYMENT_NOT_CAPTURED"


class PaymentConflict(FulfillmentError):
    status_code = 409
    code = "PAYMENT_CONFLICT"


class RefundNotAllowed(FulfillmentError):
    status_code = 400
    code = "REFUND_NOT_ALLOWED"


class InvalidWebhook(FulfillmentError):
    status_code = 400
    code = "INVALID_WEBHOOK"


def not_found(entity: str, entity_id: Optional[str]) -> NotFound:
    return NotFound(f"{entity.capitalize()} not found", id=entity_id)
