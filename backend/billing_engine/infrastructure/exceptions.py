"""
Custom Exceptions for the Billing Engine

Hierarchical exception classes for proper error handling across layers.

- ValidationError: bad input, missing pricing, refused plan change (no retry)
- ConflictError: duplicate open subscription, already-processed state
- PaymentGatewayError: transient gateway failures (retried by dunning)
- DatabaseError / QueueError: infrastructure failures (retried next tick)
"""

from typing import Optional, Dict, Any


class BillingEngineError(Exception):
    """Base exception for all billing engine errors."""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        original_error: Optional[Exception] = None
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.original_error = original_error

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "details": self.details
        }


# =============================================================================
# Validation Errors (surfaced synchronously, never retried)
# =============================================================================

class ValidationError(BillingEngineError):
    """Raised when input validation fails."""
    pass


class PricingNotFoundError(ValidationError):
    """Raised when no active price row exists for a plan."""

    def __init__(
        self,
        tier: str,
        billing_cycle: str,
        currency: str,
        region: Optional[str] = None,
    ):
        details = {
            "tier": tier,
            "billing_cycle": billing_cycle,
            "currency": currency,
        }
        if region:
            details["region"] = region
        super().__init__(
            f"Pricing not found for {tier} {billing_cycle} ({currency})",
            details,
        )


class DowngradeNotAllowedError(ValidationError):
    """Raised when a plan change would lower the tier or billing cycle."""
    pass


class RefundAmountError(ValidationError):
    """Raised when a refund exceeds the refundable balance of an invoice."""
    pass


# =============================================================================
# Persistence Errors
# =============================================================================

class DatabaseError(BillingEngineError):
    """Raised when database operations fail."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        table: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if operation:
            details["operation"] = operation
        if table:
            details["table"] = table
        super().__init__(message, details, original_error)


class NotFoundError(DatabaseError):
    """Raised when a requested resource is not found."""
    pass


class ConflictError(BillingEngineError):
    """Raised when a request conflicts with the current state of a resource."""
    pass


class DuplicateSubscriptionError(ConflictError):
    """Raised when a user already holds a PENDING or ACTIVE subscription."""
    pass


class InvalidStateError(ConflictError):
    """Raised when an entity is not in a state that allows the operation."""
    pass


# =============================================================================
# External Collaborator Errors
# =============================================================================

class PaymentGatewayError(BillingEngineError):
    """Raised when the payment gateway rejects or fails a call."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if operation:
            details["operation"] = operation
        super().__init__(message, details, original_error)


class GatewayTimeoutError(PaymentGatewayError):
    """Raised when a gateway call exceeds its timeout."""
    pass


class QueueError(BillingEngineError):
    """Raised when a job cannot be enqueued or dequeued."""

    def __init__(
        self,
        message: str,
        topic: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if topic:
            details["topic"] = topic
        super().__init__(message, details, original_error)


class ConfigurationError(BillingEngineError):
    """Raised when configuration is missing or invalid."""

    def __init__(
        self,
        message: str,
        missing_keys: Optional[list] = None,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if missing_keys:
            details["missing_keys"] = missing_keys
        super().__init__(message, details, original_error)
