"""
M-Pesa STK push callback handler.

Turns a raw callback request body into the acknowledgement Daraja expects.
Daraja keeps retrying anything it considers unacknowledged, so every path
that has nothing left to do answers with ``ResultCode: 0``. Only malformed
payloads (400) and storage failures (500) are answered otherwise; the latter
invites a redelivery, which the ledger's pending check makes safe.
"""
import json
import time
from typing import Any, Dict, Tuple

import structlog

from mpesa_checkout.core.reconciliation import ReconcileOutcome, ReconciliationEngine
from mpesa_checkout.integrations.callbacks import MalformedCallback, parse_callback
from mpesa_checkout.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

INVALID_CALLBACK_ACK = {"ResultCode": 1, "ResultDesc": "Invalid callback data"}
RETRY_LATER_ACK = {"ResultCode": 1, "ResultDesc": "Temporary failure, please retry"}

_ACK_DESCRIPTIONS = {
    ReconcileOutcome.COMPLETED: "Success",
    ReconcileOutcome.FAILED: "Callback received",
    ReconcileOutcome.UNKNOWN_TRANSACTION: "Accepted",
    ReconcileOutcome.ALREADY_TERMINAL: "Already processed",
}


def accepted(description: str = "Accepted") -> Dict[str, Any]:
    return {"ResultCode": 0, "ResultDesc": description}


class CallbackHandler:
    """
    Handler for Daraja result callbacks.

    Callbacks are unauthenticated; a forged callback can only reference an
    existing pending checkout request ID to have any effect.
    """

    def __init__(self, engine: ReconciliationEngine):
        """
        Initialize callback handler.

        Args:
            engine: Reconciliation engine the parsed callbacks are applied with
        """
        self.engine = engine

    async def handle(self, body: bytes) -> Tuple[int, Dict[str, Any]]:
        """
        Process a callback request body.

        Args:
            body: Raw request body

        Returns:
            Tuple[int, Dict[str, Any]]: HTTP status code and acknowledgement
        """
        start_time = time.time()

        try:
            payload = json.loads(body)
        except ValueError as e:
            logger.warning("callback_invalid_json", error=str(e))
            metrics.record_callback("malformed", time.time() - start_time)
            return 400, INVALID_CALLBACK_ACK

        parsed = parse_callback(payload)
        if isinstance(parsed, MalformedCallback):
            logger.warning("callback_malformed", reason=parsed.reason)
            metrics.record_callback("malformed", time.time() - start_time)
            return 400, INVALID_CALLBACK_ACK

        logger.info(
            "callback_received",
            checkout_request_id=parsed.checkout_request_id,
            merchant_request_id=parsed.merchant_request_id,
            result_code=parsed.result_code,
            result_desc=parsed.result_desc,
        )

        try:
            result = await self.engine.reconcile(parsed)
        except Exception as e:
            # Acknowledge anyway; a redelivery would hit the same fault
            logger.error(
                "callback_processing_error",
                checkout_request_id=parsed.checkout_request_id,
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            metrics.record_callback("error", time.time() - start_time)
            return 200, accepted()

        metrics.record_callback(result.outcome.value, time.time() - start_time)

        if result.outcome is ReconcileOutcome.PERSISTENCE_ERROR:
            return 500, RETRY_LATER_ACK

        logger.info(
            "callback_processed",
            checkout_request_id=result.checkout_request_id,
            order_id=result.order_id,
            outcome=result.outcome.value,
        )
        return 200, accepted(_ACK_DESCRIPTIONS[result.outcome])
