import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from coursepay.errors import OutOfOrderError, SignatureError
from coursepay.reconciliation import ApplyStatus, ReconciliationEngine
from coursepay.routes import get_engine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

REJECTED_METHODS = ["GET", "PUT", "PATCH", "DELETE"]


async def _handle(gateway_name: str, request: Request, engine: ReconciliationEngine) -> dict:
    gateway = engine.gateway(gateway_name)
    payload = await request.body()

    # gateway SDKs and the session are blocking, keep them off the event loop
    try:
        event = await run_in_threadpool(gateway.verify_event, payload, request.headers)
    except SignatureError as e:
        logger.error(f"{gateway_name} webhook rejected: {e.message}")
        raise

    logger.info(f"{gateway_name} webhook received: {event.event_type}")
    if event.outcome is None and event.failure_reason:
        result = await run_in_threadpool(
            engine.note_failure,
            event.event_id,
            event.transaction_ref,
            event.failure_reason,
            event.ids,
            gateway=gateway_name,
            event_type=event.event_type,
        )
    elif event.outcome is None:
        logger.info(f"Unhandled {gateway_name} webhook event type: {event.event_type}")
        return {"status": "success"}
    else:
        result = await run_in_threadpool(
            engine.apply_outcome,
            event.event_id,
            event.transaction_ref,
            event.outcome,
            event.ids,
            gateway=gateway_name,
            event_type=event.event_type,
        )

    logger.info(f"{gateway_name} event {event.event_id} reconciled: {result.status.value}")
    if result.status == ApplyStatus.DEFERRED:
        raise OutOfOrderError()
    return {"status": "success"}


@router.post("/stripe")
async def stripe_webhook(request: Request, engine: ReconciliationEngine = Depends(get_engine)):
    return await _handle("stripe", request, engine)


@router.post("/mercadopago")
async def mercadopago_webhook(request: Request, engine: ReconciliationEngine = Depends(get_engine)):
    return await _handle("mercadopago", request, engine)


@router.api_route("/stripe", methods=REJECTED_METHODS, include_in_schema=False)
@router.api_route("/mercadopago", methods=REJECTED_METHODS, include_in_schema=False)
async def method_not_allowed():
    return JSONResponse(status_code=405, content={"error": "Method not allowed"})
