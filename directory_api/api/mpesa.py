"""
M-Pesa callback endpoint.

Unauthenticated. Every well-formed envelope is acknowledged with
ResultCode 0 whatever happens during reconciliation; Daraja retries
anything else. Only malformed envelopes are rejected.
"""
import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from directory_api.api.subscriptions import get_subscription_service
from directory_api.core.errors import TransientLookupMiss
from directory_api.core.logging import log_event
from directory_api.features.payments.callback import CallbackDecodeError, decode_callback
from directory_api.features.subscriptions.service import SubscriptionService


logger = logging.getLogger("directory.mpesa")

router = APIRouter(prefix="/mpesa", tags=["mpesa"])

ACK = {"ResultCode": 0, "ResultDesc": "Success"}


def _reject(reason: str) -> JSONResponse:
    return JSONResponse(status_code=400, content={"ResultCode": 1, "ResultDesc": reason})


def _resolve_service(request: Request) -> SubscriptionService:
    """Honours app.dependency_overrides like Depends(get_subscription_service) would."""
    provider = request.app.dependency_overrides.get(get_subscription_service, get_subscription_service)
    return provider()


@router.post("/callback")
async def mpesa_callback(request: Request):
    body = await request.body()

    try:
        result = decode_callback(body)
    except CallbackDecodeError as e:
        log_event("warning", "mpesa.callback.rejected", event_type="mpesa.callback.rejected", extra={"reason": e.reason})
        return _reject(e.reason)

    log_event(
        "info",
        "mpesa.callback.received",
        event_type="mpesa.callback.received",
        extra={"correlation_id": result.correlation_id, "result_code": result.result_code},
    )

    try:
        # Built here so service wiring errors are acked too
        service = _resolve_service(request)
        outcome = await run_in_threadpool(service.reconcile, result)
        log_event(
            "info",
            "mpesa.callback.reconciled",
            subscription_id=outcome.subscription_id,
            event_type="mpesa.callback.reconciled",
            extra={"outcome": outcome.outcome, "projection_ok": outcome.projection_ok},
        )
    except TransientLookupMiss as e:
        # Not requeued; the correlation id is written before /subscribe returns
        log_event("info", "mpesa.callback.unmatched", event_type="mpesa.callback.unmatched", extra={"detail": e.message})
    except Exception:
        logger.error(
            "mpesa.callback.reconcile_failed",
            exc_info=True,
            extra={"event_type": "mpesa.callback.reconcile_failed", "error_code": "internal_error"},
        )

    return ACK
