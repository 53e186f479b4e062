import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.concurrency import run_in_threadpool

from datarelay.dependencies import get_reconciliation_service
from datarelay.services.paystack import verify_paystack_signature
from datarelay.services.reconciliation import ReconciliationService, TransactionNotFound

router = APIRouter()
logger = logging.getLogger(__name__)


def _parse_body(body: bytes) -> dict:
    try:
        payload = json.loads(body or b"{}")
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON body")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid JSON body")
    return payload


@router.post("/webhook/paystack")
async def paystack_webhook(request: Request, service: ReconciliationService = Depends(get_reconciliation_service)):
    signature = request.headers.get("x-paystack-signature")
    if not signature:
        raise HTTPException(status_code=401, detail="Missing signature")

    body = await request.body()
    if not verify_paystack_signature(body, signature):
        raise HTTPException(status_code=401, detail="Invalid signature")

    payload = _parse_body(body)
    event = payload.get("event")
    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    reference = str(data.get("reference") or "").strip()
    logger.info("Paystack webhook event=%s reference=%s", event, reference)

    if event != "charge.success" or not reference:
        return {"status": "ignored"}

    try:
        # Same path as client polling; the gateway is re-queried, the body is not trusted.
        result = await run_in_threadpool(service.verify_and_fulfill, reference)
    except TransactionNotFound:
        logger.warning("Paystack webhook for unknown reference %s", reference)
        return {"status": "ignored"}
    return {"status": "ok", "phase": result.phase.value}


@router.post("/webhook")
async def provider_webhook(request: Request, service: ReconciliationService = Depends(get_reconciliation_service)):
    payload = _parse_body(await request.body())
    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    reference = str(payload.get("reference") or data.get("reference") or "").strip()
    logger.info(
        "Provider webhook reference=%s status=%s message=%s",
        reference,
        payload.get("status") or data.get("status"),
        payload.get("message") or data.get("message"),
    )
    if not reference:
        return {"status": "ignored"}
    try:
        result = await run_in_threadpool(service.transaction_status, reference)
    except TransactionNotFound:
        logger.warning("Provider webhook for unknown reference %s", reference)
        return {"status": "ignored"}
    return {"status": "ok", "phase": result.phase.value}
