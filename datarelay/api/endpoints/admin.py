import logging

from fastapi import APIRouter, Depends, HTTPException

from datarelay.dependencies import get_hubnet_client, get_reconciliation_service, require_admin
from datarelay.services.hubnet import HubnetClient, parse_balance
from datarelay.services.reconciliation import ReconciliationService, TransactionNotFound
from datarelay.services.remote import CircuitOpenError, RemoteCallError
from datarelay.utils.cache import get_cached, set_cached

router = APIRouter()
logger = logging.getLogger(__name__)

BALANCE_CACHE_KEY = "hubnet:balance"
BALANCE_CACHE_TTL = 30


@router.post("/retry-transaction/{reference}", dependencies=[Depends(require_admin)])
def retry_transaction(reference: str, service: ReconciliationService = Depends(get_reconciliation_service)):
    try:
        result = service.retry(reference)
    except TransactionNotFound:
        raise HTTPException(status_code=404, detail="Transaction not found")
    logger.info("Operator retry of %s finished with %s", reference, result.phase.value)
    return result.to_response()


@router.get("/check-balance")
def check_balance(client: HubnetClient = Depends(get_hubnet_client)):
    cached = get_cached(BALANCE_CACHE_KEY)
    if cached is not None:
        return cached
    try:
        raw = client.check_balance()
    except CircuitOpenError:
        raise HTTPException(status_code=503, detail="Data provider is temporarily unavailable")
    except RemoteCallError as exc:
        logger.warning("Balance check failed: %s", exc.message)
        raise HTTPException(status_code=502, detail="Unable to fetch provider balance")
    balance = parse_balance(raw)
    body = {
        "status": "success",
        "balance": str(balance) if balance is not None else None,
        "data": raw,
    }
    set_cached(BALANCE_CACHE_KEY, body, ttl_seconds=BALANCE_CACHE_TTL)
    return body
