"""
Pydantic schemas for API request/response models.
"""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


class CreatePaymentRequest(BaseModel):
    """Request schema for starting an STK Push payment."""

    phone: str = Field(..., min_length=9, max_length=20, description="Customer phone number")
    category: str = Field(..., min_length=1, max_length=100, description="Purchased category")
    amount: Optional[int] = Field(
        default=None, gt=0, description="Amount in KES (defaults to the category price)"
    )
    referral_code: Optional[str] = Field(
        default=None, max_length=32, description="Referral code to credit on completion"
    )

    @field_validator("category")
    @classmethod
    def validate_category(cls, v: str) -> str:
        """Normalize category name."""
        return v.strip()

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "phone": "0712345678",
                    "category": "point-and-courses",
                    "referral_code": "JANE2024",
                }
            ]
        }
    }


class CreatePaymentResponse(BaseModel):
    """Response schema for an accepted push."""

    session_id: str = Field(..., description="Session handle for status polling")
    checkout_ref: str = Field(..., description="Provider checkout reference")
    status: str = Field(..., description="Session status")
    message: str = Field(..., description="Instruction for the customer")


class PaymentStatusResponse(BaseModel):
    """Response schema for session status."""

    session_id: str = Field(..., description="Session handle")
    status: str = Field(..., description="awaiting_result, completed, failed, cancelled or expired")
    stage: Optional[str] = Field(
        default=None, description="push_accepted or callback_overdue while unresolved"
    )
    result_reason: Optional[str] = Field(default=None, description="Why the session ended")
    receipt_code: Optional[str] = Field(default=None, description="Provider receipt code")
    checkout_ref: Optional[str] = Field(default=None, description="Provider checkout reference")
    amount: int = Field(..., description="Amount in KES")
    category: str = Field(..., description="Purchased category")
    created_at: str = Field(..., description="Creation timestamp (ISO 8601)")
    updated_at: str = Field(..., description="Last update timestamp (ISO 8601)")


class RedeemRequest(BaseModel):
    """Request schema for redeeming a receipt code."""

    code: str = Field(..., min_length=1, max_length=64, description="Receipt code")
    phone: Optional[str] = Field(default=None, description="Phone the payment was made from")


class RedeemResponse(BaseModel):
    """Response schema for a successful redemption."""

    valid: bool = Field(..., description="Always true on success")
    session_id: str = Field(..., description="Redeemed session")
    receipt_code: str = Field(..., description="Receipt code")
    category: str = Field(..., description="Purchased category")
    amount: int = Field(..., description="Amount in KES")
    used_at: str = Field(..., description="Redemption timestamp (ISO 8601)")


class CallbackAckResponse(BaseModel):
    """Acknowledgement returned to the provider."""

    ResultCode: int = Field(..., description="Always 0")
    ResultDesc: str = Field(..., description="Always 'Accepted'")


class SweepResponse(BaseModel):
    """Response schema for a manual sweep."""

    total: int
    completed: int
    failed: int
    pending: int
    errors: int
    expired_by_deadline: int
    credits_retried: int
    items: List[Dict[str, Any]]


class RecentCallbacksResponse(BaseModel):
    callbacks: List[Dict[str, Any]] = Field(..., description="Newest first")


class TransactionEventsResponse(BaseModel):
    session_id: str
    events: List[Dict[str, Any]]


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status (healthy/unhealthy)")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")
