"""
API routes for STK Push payments.
"""
import json
from typing import Any, Dict

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from stk_reconciliation.core.exceptions import SessionNotFound
from stk_reconciliation.core.intake import IntakeHandler
from stk_reconciliation.core.redemption import ReceiptRedemption
from stk_reconciliation.core.status import StatusPoller
from stk_reconciliation.core.store import TransactionStore
from stk_reconciliation.integrations.callback_handler import CallbackHandler
from stk_reconciliation.monitoring.health import HealthCheck
from stk_reconciliation.workers.sweeper import BulkSyncSweeper

from .dependencies import (
    get_callback_handler,
    get_health_check,
    get_intake_handler,
    get_redemption,
    get_status_poller,
    get_store,
    get_sweeper,
)
from .schemas import (
    CallbackAckResponse,
    CreatePaymentRequest,
    CreatePaymentResponse,
    HealthCheckResponse,
    PaymentStatusResponse,
    RecentCallbacksResponse,
    RedeemRequest,
    RedeemResponse,
    SweepResponse,
    TransactionEventsResponse,
)

logger = structlog.get_logger(__name__)

# Create routers
payment_router = APIRouter(prefix="/payments", tags=["payments"])
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])
monitoring_router = APIRouter(tags=["monitoring"])


@payment_router.post(
    "",
    response_model=CreatePaymentResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Start a payment",
    description="Create a payment session and send an STK Push prompt to the customer",
)
async def create_payment(
    request: CreatePaymentRequest,
    intake: IntakeHandler = Depends(get_intake_handler),
) -> Dict[str, Any]:
    """
    Start a payment.

    Provider failures surface as 502/503; the caller should start a new
    session rather than retry this one.
    """
    logger.info(
        "api_create_payment_request",
        category=request.category,
        amount=request.amount,
        has_referral=bool(request.referral_code),
    )

    result = await intake.initiate(
        phone=request.phone,
        category=request.category,
        amount=request.amount,
        referral_code=request.referral_code,
    )

    return {
        "session_id": result.session_id,
        "checkout_ref": result.checkout_ref,
        "status": "awaiting_result",
        "message": "Check your phone and enter your M-Pesa PIN to complete payment",
    }


@payment_router.post(
    "/redeem",
    response_model=RedeemResponse,
    summary="Redeem a receipt code",
    description="Exchange a completed payment's receipt code for access, once",
)
async def redeem_receipt(
    request: RedeemRequest,
    redemption: ReceiptRedemption = Depends(get_redemption),
) -> Dict[str, Any]:
    """Redeem a receipt code."""
    transaction = await redemption.redeem(request.code, request.phone)
    return {
        "valid": True,
        "session_id": transaction.session_id,
        "receipt_code": transaction.receipt_code,
        "category": transaction.category,
        "amount": transaction.amount,
        "used_at": transaction.used_at.isoformat(),
    }


@payment_router.get(
    "/{session_id}",
    response_model=PaymentStatusResponse,
    summary="Get payment status",
    description="Current session status; overdue sessions are checked with the provider",
)
async def get_payment_status(
    session_id: str,
    poller: StatusPoller = Depends(get_status_poller),
) -> Dict[str, Any]:
    """Get payment status by session id."""
    view = await poller.get_status(session_id)
    return view.to_dict()


@webhook_router.post(
    "/mpesa",
    response_model=CallbackAckResponse,
    summary="M-Pesa callback endpoint",
    description="Receive STK Push results from Daraja; always acknowledged",
)
async def mpesa_callback(
    request: Request,
    callbacks: CallbackHandler = Depends(get_callback_handler),
) -> Dict[str, Any]:
    """Handle a Daraja STK callback."""
    body = await request.body()
    try:
        payload = json.loads(body) if body else None
    except ValueError:
        logger.warning("api_callback_invalid_json", body_length=len(body))
        payload = None

    return await callbacks.handle(payload)


@admin_router.post(
    "/sweep",
    response_model=SweepResponse,
    summary="Run a sweep",
    description="Reconcile every overdue session now",
)
async def run_sweep(sweeper: BulkSyncSweeper = Depends(get_sweeper)) -> Dict[str, Any]:
    """Run one bulk sync sweep."""
    logger.info("api_sweep_started")
    report = await sweeper.run_once()
    return report.to_dict()


@admin_router.get(
    "/callbacks",
    response_model=RecentCallbacksResponse,
    summary="Recent callbacks",
    description="Summaries of the most recent provider callbacks",
)
async def recent_callbacks(
    callbacks: CallbackHandler = Depends(get_callback_handler),
) -> Dict[str, Any]:
    return {"callbacks": callbacks.recent_callbacks()}


@admin_router.get(
    "/transactions/{session_id}/events",
    response_model=TransactionEventsResponse,
    summary="Session audit trail",
)
async def transaction_events(
    session_id: str,
    store: TransactionStore = Depends(get_store),
) -> Dict[str, Any]:
    """Audit trail for one session, oldest first."""
    if await store.get_by_session_id(session_id) is None:
        raise SessionNotFound(f"Session {session_id} not found", session_id=session_id)
    return {"session_id": session_id, "events": await store.list_events(session_id)}


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    try:
        return await health_check.check_all()
    except Exception as e:
        logger.error("health_check_error", error=str(e))
        return {
            "status": "unhealthy",
            "checks": {"error": str(e)},
        }


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
    description="Kubernetes liveness probe endpoint",
)
async def liveness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Liveness probe endpoint."""
    return await health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
    description="Kubernetes readiness probe endpoint",
)
async def readiness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Readiness probe endpoint."""
    result = await health_check.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics",
    include_in_schema=False,  # Don't include in OpenAPI docs
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
