"""
D7 Billing Schemas

Pydantic schemas for the checkout, subscription and payment history endpoints.
Gateway callbacks are not modelled here: they arrive form-encoded or as JSON
and must be hashed exactly as received.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class CreateOrderRequest(BaseModel):
    """Schema for starting a PayU checkout"""

    plan: str = Field(..., min_length=1, max_length=50, description="Plan name (professional or agency)")
    phone: Optional[str] = Field(None, max_length=20, description="Customer phone number")

    @field_validator("plan")
    @classmethod
    def normalize_plan(cls, v):
        return v.strip().lower()

    model_config = ConfigDict(json_schema_extra={"example": {"plan": "professional"}})


class CreateOrderResponse(BaseModel):
    """Signed order form plus display data"""

    success: bool = Field(..., description="Whether the order was created")
    data: Dict[str, Any] = Field(default_factory=dict, description="Gateway form fields and plan details")
    message: str = Field(default="Order created successfully")


class WebhookAckResponse(BaseModel):
    """Acknowledgment returned to the gateway"""

    status: str = Field(default="success")
    message: str
    txnid: str
    gatewayTransactionId: str
    invoiceNumber: Optional[str] = None

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "status": "success",
                "message": "Payment processed successfully",
                "txnid": "TXN_20250115103000_ABC123",
                "gatewayTransactionId": "403993715521937565",
                "invoiceNumber": "INV-202501-000001",
            }
        }
    )


class WebhookErrorResponse(BaseModel):
    """Rejection returned to the gateway; 503 asks for a retry, other codes are final"""

    status: str = Field(default="error")
    message: str
    txnid: Optional[str] = None
    gatewayTransactionId: Optional[str] = None

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "status": "error",
                "message": "Invalid hash",
                "txnid": "TXN_20250115103000_ABC123",
                "gatewayTransactionId": "403993715521937565",
            }
        }
    )


class SubscriptionStatusResponse(BaseModel):
    """Current subscription and access state for the signed-in user"""

    success: bool = True
    subscription: Optional[Dict[str, Any]] = None
    hasAccess: bool = False
    usageTier: str
    subscriptionStatus: str
    subscriptionEndDate: Optional[datetime] = None


class CancelSubscriptionRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500, description="Why the user is cancelling")


class CancelSubscriptionResponse(BaseModel):
    success: bool = True
    message: str = "Subscription cancelled. Access continues until the end of the billing period."
    endDate: datetime


class PaymentHistoryResponse(BaseModel):
    success: bool = True
    payments: List[Dict[str, Any]] = Field(default_factory=list)
    count: int = 0


class ErrorResponse(BaseModel):
    """Schema for API error responses"""

    success: bool = Field(default=False, description="Always false for error responses")
    error: str = Field(..., description="Error message")
    error_type: str = Field(..., description="Error type/category")
    error_code: Optional[str] = Field(None, description="Specific error code")
    details: Optional[Dict[str, Any]] = Field(None, description="Additional error details")
    timestamp: datetime = Field(default_factory=datetime.utcnow, description="Error timestamp")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "success": False,
                "error": "Invalid hash",
                "error_type": "SignatureInvalidError",
                "error_code": "SIGNATURE_INVALID",
                "details": {"txnid": "TXN_20250115103000_ABC123"},
                "timestamp": "2025-01-15T10:30:00Z",
            }
        }
    )
