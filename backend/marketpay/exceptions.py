"""
MarketPay Exception Hierarchy

Every error raised by the service layer derives from MarketplaceError and
carries a stable error code plus the HTTP status the API layer maps it to.
"""
from typing import Optional, Dict, Any


class MarketplaceError(Exception):
    """
    Base exception for all marketplace errors.

    Subclasses set status_code; the FastAPI handler in main.py renders
    to_dict() with that status.
    """

    status_code: int = 400

    def __init__(
        self,
        error_code: str,
        message: str,
        details: Optional[Dict[str, Any]] = None
    ):
        self.error_code = error_code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to API error response format."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details
        }


# ============================================================================
# Authentication / Authorization
# ============================================================================

class NotAuthenticatedError(MarketplaceError):
    """No identity was supplied with the request."""

    status_code = 401

    def __init__(self, message: str = "Not authenticated", details: Optional[Dict[str, Any]] = None):
        super().__init__("auth:not_authenticated", message, details)


class UnauthorizedError(MarketplaceError):
    """
    Caller is known but not allowed to perform the action.

    Examples:
    - Non-admin attempting a refund
    - Buyer reading another buyer's payment
    """

    status_code = 403

    def __init__(self, message: str = "Unauthorized", details: Optional[Dict[str, Any]] = None):
        super().__init__("auth:unauthorized", message, details)


# ============================================================================
# Not Found
# ============================================================================

class NotFoundError(MarketplaceError):
    """Base for missing resources."""

    status_code = 404

    def __init__(self, resource: str, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(f"{resource}:not_found", message, details)


class PaymentNotFoundError(NotFoundError):
    def __init__(self, message: str = "Payment not found", details: Optional[Dict[str, Any]] = None):
        super().__init__("payment", message, details)


class OrderNotFoundError(NotFoundError):
    def __init__(self, message: str = "Order not found", details: Optional[Dict[str, Any]] = None):
        super().__init__("order", message, details)


class ProductNotFoundError(NotFoundError):
    def __init__(self, message: str = "Product not found", details: Optional[Dict[str, Any]] = None):
        super().__init__("product", message, details)


class CartItemNotFoundError(NotFoundError):
    def __init__(self, message: str = "Cart item not found", details: Optional[Dict[str, Any]] = None):
        super().__init__("cart_item", message, details)


class PlanNotFoundError(NotFoundError):
    def __init__(self, message: str = "Invalid or inactive plan", details: Optional[Dict[str, Any]] = None):
        super().__init__("plan", message, details)


class SubscriptionNotFoundError(NotFoundError):
    def __init__(self, message: str = "Subscription not found", details: Optional[Dict[str, Any]] = None):
        super().__init__("subscription", message, details)


class PayoutNotFoundError(NotFoundError):
    def __init__(self, message: str = "Payout not found", details: Optional[Dict[str, Any]] = None):
        super().__init__("payout", message, details)


# ============================================================================
# Validation
# ============================================================================

class ValidationError(MarketplaceError):
    """
    Request is well-formed but violates a business rule.

    Examples:
    - Non-positive payment amount
    - Refund larger than the original payment
    """

    status_code = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None, error_code: str = "validation:failed"):
        super().__init__(error_code, message, details)


class EmptyCartError(ValidationError):
    def __init__(self, message: str = "Cart is empty", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details, "cart:empty")


class ProductUnavailableError(ValidationError):
    """Product is no longer active (or was removed) at snapshot time."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details, "product:unavailable")


class InsufficientStockError(ValidationError):
    """Requested quantity exceeds current stock."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details, "product:insufficient_stock")


class InvalidRefundError(ValidationError):
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details, "refund:invalid")


class PayoutNotAllowedError(ValidationError):
    """
    Order cannot be paid out (yet).

    Examples:
    - Order not completed or its payment not successful
    - Seller has no bank details on file
    - Transfer attempts exhausted
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details, "payout:not_allowed")


class InvalidTransitionError(ValidationError):
    """Requested status change is not allowed from the current status."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details, "status:invalid_transition")


class CheckoutInProgressError(MarketplaceError):
    """Another request with the same idempotency key is still opening its checkout."""

    status_code = 409

    def __init__(self, message: str = "Checkout already in progress", details: Optional[Dict[str, Any]] = None):
        super().__init__("payment:in_progress", message, details)


class WebhookSignatureError(MarketplaceError):
    """
    Webhook could not be authenticated.

    Examples:
    - Missing or malformed signature header
    - HMAC mismatch
    - Timestamp outside the accepted window
    """

    status_code = 401

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("webhook:signature_invalid", message, details)


# ============================================================================
# Collaborators
# ============================================================================

class GatewayError(MarketplaceError):
    """Payment gateway rejected the call or is unreachable."""

    status_code = 502

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("gateway:error", message, details)


# ============================================================================
# Internal
# ============================================================================

class RaceLostError(Exception):
    """
    Raised inside the insert-then-tiebreak helpers when the row this caller
    inserted lost to an earlier row. Always caught by the service that
    raised it; the caller receives the winning record instead.
    """

    def __init__(self, winner_id: int):
        self.winner_id = winner_id
        super().__init__(f"Lost insert race to row {winner_id}")
