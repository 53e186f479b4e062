from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from datarelay.api.routes import router as api_router
from datarelay.core.config import get_settings, parse_cors_origins
import logging
import time
from urllib.parse import urlparse
from datarelay.core.logging import configure_logging
from datarelay.core.store import StoreError
from datarelay.dependencies import get_breakers, get_store
from datarelay.middlewares.rate_limit import limiter
from datarelay.services.circuit_breaker import CircuitState


settings = get_settings()

configure_logging()

logger = logging.getLogger(__name__)

app = FastAPI(title=settings.app_name)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
_started_at = time.time()


def _validation_message(exc: RequestValidationError) -> str:
    parts = []
    for error in exc.errors():
        loc = [str(item) for item in error.get("loc", ()) if item not in ("body", "query", "path")]
        message = str(error.get("msg") or "Invalid value")
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        parts.append(f"{'.'.join(loc)}: {message}" if loc else message)
    return "; ".join(parts) or "Invalid request"


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request, exc):
    return JSONResponse(status_code=400, content={"status": "error", "message": _validation_message(exc)})


@app.exception_handler(StoreError)
async def store_error_handler(request, exc):
    logger.error("Transaction store failure on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=500,
        content={"status": "error", "message": "Unable to persist transaction state. Please retry."},
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request, exc):
    logger.error("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"status": "error", "message": "Internal server error"})


configured_origins = parse_cors_origins(settings.cors_origins or "")
def _origin_from_url(raw: str) -> str | None:
    text = str(raw or "").strip()
    if not text:
        return None
    parsed = urlparse(text)
    if parsed.scheme and parsed.netloc:
        return f"{parsed.scheme}://{parsed.netloc}"
    return None


frontend_origin = _origin_from_url(settings.frontend_base_url)
allow_origins = list(dict.fromkeys(configured_origins + ([frontend_origin] if frontend_origin else [])))

logger.info("CORS allow_origins=%s", allow_origins)

app.add_middleware(
    CORSMiddleware,
    allow_origins=allow_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router, prefix=settings.api_prefix)


@app.on_event("startup")
def start_store():
    store = get_store()
    store.start()
    logger.info("Relay started with %s stored transaction(s)", len(store))


@app.on_event("shutdown")
def stop_store():
    # Final synchronous flush; anything still dirty is written here.
    get_store().close()


@app.get("/")
def root():
    return {"status": "ok"}


@app.get("/health")
def health():
    # Liveness plus breaker and store state.
    breakers = {name: breaker.snapshot() for name, breaker in get_breakers().items()}
    store = get_store()
    degraded = any(item["state"] == CircuitState.OPEN.value for item in breakers.values())
    return {
        "status": "degraded" if degraded else "ok",
        "service": settings.app_name,
        "uptime_seconds": int(max(0, time.time() - _started_at)),
        "breakers": breakers,
        "store": store.stats(),
    }


@app.get("/readyz")
def readyz():
    # Readiness: store loaded and flusher alive.
    store = get_store()
    if store.is_loaded and store.is_running:
        return {
            "status": "ready",
            "uptime_seconds": int(max(0, time.time() - _started_at)),
        }
    logger.warning("Readiness check failed: loaded=%s flusher_running=%s", store.is_loaded, store.is_running)
    return JSONResponse(
        status_code=503,
        content={"status": "not_ready", "detail": "transaction_store_unavailable"},
    )
