"""
Custom exceptions for OneReport
Provides structured error handling across all domains

Payment callbacks rely on `status_code` and `retryable`: the gateway retries a
webhook on any non-2xx answer, so only transient failures may map to 5xx.
"""
from typing import Any, Dict, List, Optional


class OneReportError(Exception):
    """Base exception for all OneReport errors"""

    retryable = False

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        status_code: int = 500,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.details = details or {}
        self.status_code = status_code

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses"""
        return {
            "error": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(OneReportError):
    """Raised when input validation fails"""

    def __init__(self, message: str, field: Optional[str] = None, **details):
        super().__init__(
            message=message,
            error_code="VALIDATION_ERROR",
            details={"field": field, **details} if field else details,
            status_code=400,
        )


class NotFoundError(OneReportError):
    """Raised when a resource is not found"""

    def __init__(self, resource: str, identifier: Any):
        super().__init__(
            message=f"{resource} not found: {identifier}",
            error_code="NOT_FOUND",
            details={"resource": resource, "identifier": str(identifier)},
            status_code=404,
        )


class DuplicateError(OneReportError):
    """Raised when attempting to create a duplicate resource"""

    def __init__(self, resource: str, identifier: Any):
        super().__init__(
            message=f"{resource} already exists: {identifier}",
            error_code="DUPLICATE",
            details={"resource": resource, "identifier": str(identifier)},
            status_code=409,
        )


class ExternalAPIError(OneReportError):
    """Raised when an external API call fails"""

    def __init__(
        self,
        provider: str,
        message: str,
        status_code: Optional[int] = None,
        response_body: Optional[str] = None,
        **details,
    ):
        super().__init__(
            message=f"{provider} API error: {message}",
            error_code="EXTERNAL_API_ERROR",
            details={
                "provider": provider,
                "api_status_code": status_code,
                "response_body": response_body,
                **details,
            },
            status_code=502,
        )


class ConfigurationError(OneReportError):
    """Raised when configuration is invalid or missing"""

    def __init__(self, message: str, setting: Optional[str] = None):
        super().__init__(
            message=message,
            error_code="CONFIGURATION_ERROR",
            details={"setting": setting} if setting else {},
            status_code=500,
        )


class DatabaseError(OneReportError):
    """Raised when database operations fail"""

    def __init__(self, message: str, operation: Optional[str] = None, **details):
        super().__init__(
            message=message,
            error_code="DATABASE_ERROR",
            details={"operation": operation, **details} if operation else details,
            status_code=500,
        )


class PaymentError(OneReportError):
    """Raised when payment processing fails"""

    def __init__(
        self,
        message: str,
        txnid: Optional[str] = None,
        error_code: str = "PAYMENT_ERROR",
        status_code: int = 402,
        **details,
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            details={"txnid": txnid, **details},
            status_code=status_code,
        )
        self.txnid = txnid


class EmailDeliveryError(OneReportError):
    """Raised when email delivery fails"""

    def __init__(
        self,
        message: str,
        email: Optional[str] = None,
        reason: Optional[str] = None,
        **details,
    ):
        super().__init__(
            message=message,
            error_code="EMAIL_DELIVERY_ERROR",
            details={"email": email, "reason": reason, **details},
            status_code=500,
        )


# Payment reconciliation taxonomy


class MissingFieldError(ValidationError):
    """Callback payload lacks required gateway fields (permanent)"""

    def __init__(self, fields: List[str]):
        super().__init__(
            message=f"Missing required fields: {', '.join(fields)}",
            missing_fields=list(fields),
        )
        self.error_code = "MISSING_FIELD"
        self.fields = list(fields)


class SignatureInvalidError(PaymentError):
    """Callback hash does not match (permanent, never retried)"""

    def __init__(self, txnid: Optional[str] = None):
        super().__init__(
            message="Invalid hash",
            txnid=txnid,
            error_code="SIGNATURE_INVALID",
            status_code=401,
        )


class DuplicateTransactionError(DuplicateError):
    """Gateway transaction already claimed; callers treat this as success"""

    def __init__(self, gateway_transaction_id: str):
        super().__init__("Payment", gateway_transaction_id)
        self.error_code = "DUPLICATE_TRANSACTION"
        self.gateway_transaction_id = gateway_transaction_id


class PersistenceFailureError(DatabaseError):
    """Store write failed before commit; safe for the gateway to retry"""

    retryable = True

    def __init__(self, message: str, operation: Optional[str] = None, **details):
        super().__init__(message, operation=operation, **details)
        self.error_code = "PERSISTENCE_FAILURE"
        self.status_code = 503


class UserOrPlanNotFoundError(NotFoundError):
    """Paid callback references an unknown account or plan (needs manual review)"""

    def __init__(self, resource: str, identifier: Any, txnid: Optional[str] = None):
        super().__init__(resource, identifier)
        self.error_code = "USER_OR_PLAN_NOT_FOUND"
        self.details.update({"txnid": txnid, "requires_manual_review": True})


class DeferredTaskFailureError(OneReportError):
    """Post-acknowledgment work failed; financial state is already committed"""

    def __init__(self, task: str, reason: str):
        super().__init__(
            message=f"Deferred task {task} failed: {reason}",
            error_code="DEFERRED_TASK_FAILURE",
            details={"task": task, "reason": reason},
            status_code=500,
        )


class SubscriptionStateError(OneReportError):
    """Requested subscription transition is not allowed from the current state"""

    def __init__(self, subscription_id: str, current: str, target: str):
        super().__init__(
            message=f"Subscription {subscription_id} cannot move from {current} to {target}",
            error_code="INVALID_SUBSCRIPTION_TRANSITION",
            details={"subscription_id": subscription_id, "current": current, "target": target},
            status_code=409,
        )


class InvalidPlanError(ValidationError):
    """Unknown or non-purchasable plan"""

    def __init__(self, plan: str):
        super().__init__(message=f"Invalid plan: {plan}", field="plan")
        self.error_code = "INVALID_PLAN"
