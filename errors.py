"""
Domain errors

Every failure the services raise is a StorefrontError. The app turns them into
``{"error": message, "code": code}`` responses with the class's status code.
"""
from typing import Any, Dict, Optional

GENERIC_CHECKOUT_MESSAGE = "Failed to create order. Please try again."


class StorefrontError(Exception):
    status_code = 500
    code = "internal_error"
    message = "Something went wrong"

    def __init__(self, message: Optional[str] = None, **extra: Any):
        self.message = message or self.message
        self.extra = extra
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        body = {"error": self.message, "code": self.code}
        body.update(self.extra)
        return body


class InvalidRequestError(StorefrontError):
    status_code = 400
    code = "invalid_request"
    message = "Invalid request"


class NotFoundError(StorefrontError):
    status_code = 404
    code = "not_found"
    message = "Not found"


class OutOfStockError(StorefrontError):
    status_code = 409
    code = "out_of_stock"
    message = "Insufficient stock"


class InventoryRaceError(StorefrontError):
    """Stock changed between the precondition check and the decrement."""

    status_code = 409
    code = "inventory_race"
    message = "Item sold out while placing the order"


class InvalidTransitionError(StorefrontError):
    status_code = 409
    code = "invalid_transition"

    def __init__(self, current: str, target: str, reason: str):
        super().__init__(
            f"Cannot move order from '{current}' to '{target}': {reason}",
            current=current,
            target=target,
        )


class PaymentGatewayError(StorefrontError):
    status_code = 502
    code = "payment_failed"
    message = GENERIC_CHECKOUT_MESSAGE


class PaymentIntentInUseError(StorefrontError):
    status_code = 409
    code = "payment_intent_in_use"
    message = "This payment has already been used for another order"


class StoreUnavailableError(StorefrontError):
    status_code = 503
    code = "store_unavailable"
    message = "Database not available"


class OrderTimeoutError(StorefrontError):
    status_code = 504
    code = "order_timeout"
    message = GENERIC_CHECKOUT_MESSAGE


class ReconciliationRequiredError(StorefrontError):
    """A compensating action failed; an operator has to fix the records by hand."""

    status_code = 500
    code = "needs_reconciliation"
    message = "Your order could not be completed and needs manual review. Please contact support."
