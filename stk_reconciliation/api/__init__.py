"""FastAPI application and routes."""
from .main import app
from .schemas import (
    CreatePaymentRequest,
    CreatePaymentResponse,
    PaymentStatusResponse,
    RedeemRequest,
    RedeemResponse,
)

__all__ = [
    "app",
    "CreatePaymentRequest",
    "CreatePaymentResponse",
    "PaymentStatusResponse",
    "RedeemRequest",
    "RedeemResponse",
]
