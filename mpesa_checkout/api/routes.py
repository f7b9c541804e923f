"""
API routes for M-Pesa checkout.
"""
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from mpesa_checkout.core.reconciliation import (
    AmountMismatch,
    CheckoutValidationError,
    GatewayBusinessRejection,
    OrderNotFound,
    PersistenceError,
    ReconciliationEngine,
    UnknownTransaction,
)
from mpesa_checkout.integrations.callback_handler import CallbackHandler
from mpesa_checkout.integrations.daraja_client import GatewayAuthError, GatewayTransportError
from mpesa_checkout.monitoring.health import HealthCheck

from .dependencies import get_callback_handler, get_health_check, get_reconciliation_engine
from .schemas import (
    CallbackAck,
    ExpireResponse,
    HealthCheckResponse,
    InitiatePaymentRequest,
    InitiatePaymentResponse,
    PaymentStatusResponse,
    PendingSummaryResponse,
    QueryPaymentRequest,
    ReconciliationResponse,
)

logger = structlog.get_logger(__name__)

# Create routers
mpesa_router = APIRouter(prefix="/mpesa", tags=["mpesa"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])
monitoring_router = APIRouter(tags=["monitoring"])


def _error(status_code: int, message: str, **extra: Any) -> HTTPException:
    return HTTPException(
        status_code=status_code,
        detail={"success": False, "message": message, **extra},
    )


def _gateway_error(e: Exception) -> HTTPException:
    if isinstance(e, GatewayAuthError):
        logger.error("api_gateway_auth_error", reason=e.reason.value, error=str(e))
        return _error(status.HTTP_502_BAD_GATEWAY, "Payment provider authentication failed")
    logger.error("api_gateway_transport_error", error=str(e))
    return _error(status.HTTP_504_GATEWAY_TIMEOUT, "Payment provider did not respond")


@mpesa_router.post(
    "/stkpush",
    response_model=InitiatePaymentResponse,
    summary="Initiate STK push",
    description="Send an M-Pesa payment prompt to the payer's phone for an order",
)
async def initiate_stk_push(
    request: InitiatePaymentRequest,
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
) -> InitiatePaymentResponse:
    """
    Initiate an STK push.

    A successful response means the prompt was sent; the outcome arrives
    later on the callback URL.
    """
    logger.info("api_stk_push_request", order_id=request.order_id)

    try:
        initiation = await engine.initiate(
            phone_number=request.phone_number.strip() if request.phone_number else None,
            amount=request.amount,
            order_id=request.order_id,
            account_reference=request.account_reference,
        )

    except CheckoutValidationError as e:
        raise _error(status.HTTP_400_BAD_REQUEST, str(e), field=e.field)

    except OrderNotFound as e:
        raise _error(status.HTTP_404_NOT_FOUND, str(e))

    except AmountMismatch as e:
        raise _error(
            status.HTTP_400_BAD_REQUEST,
            str(e),
            expected=str(e.expected),
            requested=str(e.requested),
        )

    except GatewayBusinessRejection as e:
        raise _error(status.HTTP_400_BAD_REQUEST, str(e), code=e.response_code)

    except (GatewayAuthError, GatewayTransportError) as e:
        raise _gateway_error(e)

    except PersistenceError as e:
        logger.error("api_stk_push_persistence_error", order_id=request.order_id, error=str(e))
        raise _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Failed to record payment request")

    return InitiatePaymentResponse(
        success=True,
        message="STK push sent successfully. Please check your phone.",
        checkout_request_id=initiation.checkout_request_id,
        merchant_request_id=initiation.merchant_request_id,
        customer_message=initiation.customer_message,
    )


@mpesa_router.post(
    "/query",
    response_model=PaymentStatusResponse,
    summary="Query payment status",
    description="Report the status of an STK push from the ledger or Daraja",
)
async def query_payment_status(
    request: QueryPaymentRequest,
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
) -> PaymentStatusResponse:
    """Query payment status. Never changes ledger or order state."""
    if not request.checkout_request_id:
        raise _error(
            status.HTTP_400_BAD_REQUEST,
            "Checkout Request ID is required",
            field="checkoutRequestID",
        )

    try:
        result = await engine.query_and_sync(request.checkout_request_id)

    except UnknownTransaction as e:
        raise _error(status.HTTP_404_NOT_FOUND, str(e))

    except GatewayBusinessRejection as e:
        raise _error(status.HTTP_400_BAD_REQUEST, str(e), code=e.response_code)

    except (GatewayAuthError, GatewayTransportError) as e:
        raise _gateway_error(e)

    return PaymentStatusResponse(
        status=result.status,
        result_code=result.result_code,
        result_desc=result.result_desc,
        mpesa_receipt_number=result.receipt_number,
        source=result.source,
        data=result.data or None,
    )


@mpesa_router.post(
    "/callback",
    response_model=CallbackAck,
    summary="Daraja callback endpoint",
    description="Receive STK push results from Daraja",
)
async def mpesa_callback(
    request: Request,
    handler: CallbackHandler = Depends(get_callback_handler),
) -> JSONResponse:
    """Apply a Daraja result callback and acknowledge it."""
    body = await request.body()
    status_code, ack = await handler.handle(body)
    return JSONResponse(status_code=status_code, content=ack)


@mpesa_router.get(
    "/callback",
    summary="Callback URL check",
    description="Confirm the callback URL is reachable",
)
async def mpesa_callback_check() -> Dict[str, Any]:
    return {"message": "M-Pesa callback endpoint is active", "method": "POST"}


@admin_router.get(
    "/mpesa/pending",
    response_model=PendingSummaryResponse,
    summary="Pending ledger summary",
    description="Depth, total and age of pending STK push transactions",
)
async def pending_summary(
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
) -> Dict[str, Any]:
    return await engine.pending_summary()


@admin_router.post(
    "/mpesa/expire",
    response_model=ExpireResponse,
    summary="Expire stale transactions",
    description="Fail pending transactions that never received a callback",
)
async def expire_stale_transactions(
    older_than_minutes: Optional[int] = Query(default=None, ge=1),
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
) -> Dict[str, Any]:
    """Run the pending sweep once."""
    older_than = timedelta(minutes=older_than_minutes) if older_than_minutes else None
    expired = await engine.expire_stale_transactions(older_than=older_than)
    logger.info("api_expire_completed", expired=expired)
    return {"expired": expired}


@admin_router.get(
    "/reconcile",
    response_model=ReconciliationResponse,
    summary="Find discrepancies",
    description="List completed payments whose order was never marked paid",
)
async def run_reconciliation(
    since: Optional[datetime] = None,
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
) -> Dict[str, Any]:
    """If no start time is given, the last 24 hours are checked."""
    logger.info("api_reconciliation_started", since=since.isoformat() if since else None)
    result = await engine.find_discrepancies(since)
    logger.info("api_reconciliation_completed", discrepancies=result["discrepancy_count"])
    return result


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
    return await health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
    description="Kubernetes readiness probe endpoint",
)
async def readiness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    result = await health_check.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
