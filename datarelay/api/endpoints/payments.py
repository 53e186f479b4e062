import logging
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import RedirectResponse

from datarelay.core.config import get_settings
from datarelay.dependencies import get_reconciliation_service
from datarelay.middlewares.rate_limit import limiter
from datarelay.schemas.payment import InitiatePaymentRequest
from datarelay.services.reconciliation import ReconciliationService, TransactionNotFound
from datarelay.services.remote import CircuitOpenError, ClientRejected, RemoteCallError

router = APIRouter()
settings = get_settings()
logger = logging.getLogger(__name__)


def _callback_url(request: Request) -> str:
    base = str(settings.public_base_url or "").strip().rstrip("/") or str(request.base_url).rstrip("/")
    return f"{base}{settings.api_prefix}/verify-payment"


def _frontend_page(page: str, reference: str) -> str:
    base = str(settings.frontend_base_url or "").rstrip("/")
    return f"{base}/{page}?{urlencode({'reference': reference})}"


@router.post("/initiate-payment")
@limiter.limit(settings.initiate_rate_limit)
def initiate_payment(
    request: Request,
    payload: InitiatePaymentRequest,
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    intent = payload.to_intent()
    try:
        result = service.initiate(intent, callback_url=_callback_url(request))
    except ClientRejected as exc:
        raise HTTPException(status_code=400, detail=exc.message)
    except CircuitOpenError:
        raise HTTPException(status_code=503, detail="Payment service is temporarily unavailable")
    except RemoteCallError as exc:
        logger.warning("Initiate failed: %s", exc.message)
        raise HTTPException(status_code=502, detail="Unable to reach the payment service")
    return {
        "status": "success",
        "data": {"reference": result.reference, "authorizationUrl": result.authorization_url},
    }


@router.get("/verify-payment/{reference}")
def verify_payment(reference: str, service: ReconciliationService = Depends(get_reconciliation_service)):
    try:
        result = service.verify_and_fulfill(reference)
    except TransactionNotFound:
        raise HTTPException(status_code=404, detail="Transaction not found")
    return result.to_response()


@router.get("/verify-payment")
def verify_payment_redirect(
    reference: str | None = None,
    trxref: str | None = None,
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    """Gateway redirect target. Always lands the browser on a frontend page."""
    reference = (reference or trxref or "").strip()
    if not reference:
        return RedirectResponse(_frontend_page("payment-failed.html", ""), status_code=302)
    try:
        result = service.verify_and_fulfill(reference)
    except TransactionNotFound:
        return RedirectResponse(_frontend_page("payment-failed.html", reference), status_code=302)

    if result.status == "success":
        page = "payment-success.html"
    elif result.status == "failed":
        page = "payment-failed.html"
    else:
        page = "payment-pending.html"
    return RedirectResponse(_frontend_page(page, reference), status_code=302)


@router.get("/transaction-status/{reference}")
def transaction_status(reference: str, service: ReconciliationService = Depends(get_reconciliation_service)):
    try:
        result = service.transaction_status(reference)
    except TransactionNotFound:
        raise HTTPException(status_code=404, detail="Transaction not found")
    return result.to_response()
