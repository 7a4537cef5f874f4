"""
FastAPI application entry point.

Wires the coach proposal and admin policy routers, the application-owned
policy runtime cache, request logging and error rendering.
"""
import logging
import time
import uuid

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from core.config import settings
from core.database import SessionLocal, check_db_connection
from core.exceptions import APIException, StoreUnavailableError
from core.logging import SERVICE_NAME, setup_logging
from routers import plan_proposals, policy_tuning
from services.policy_runtime_cache import PolicyRuntimeCache
from services.policy_store import SqlPolicyStore

setup_logging()
logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
SENSITIVE_HEADERS = ("authorization", "cookie")


def _filter_sensitive_data(event, hint):
    """Strip credentials from Sentry events before they leave the process."""
    headers = event.get("request", {}).get("headers")
    if isinstance(headers, dict):
        for name in list(headers):
            if name.lower() in SENSITIVE_HEADERS:
                headers.pop(name)
    return event


def _init_sentry() -> None:
    if not settings.SENTRY_DSN:
        return
    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.ENVIRONMENT,
        release=f"{SERVICE_NAME}@{app.version}",
        traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE,
        profiles_sample_rate=settings.SENTRY_PROFILES_SAMPLE_RATE,
        integrations=[FastApiIntegration(transaction_style="endpoint"), SqlalchemyIntegration()],
        send_default_pii=False,
        before_send=_filter_sensitive_data,
    )
    logger.info(f"Sentry initialized for environment: {settings.ENVIRONMENT}")


_docs_enabled = settings.DEBUG or settings.EXPOSE_API_DOCS
app = FastAPI(
    title="Plan Proposals API",
    description="Coach plan-draft proposals with safety-gated approval and admin policy tuning",
    version="1.0.0",
    docs_url="/docs" if _docs_enabled else None,
    redoc_url="/redoc" if _docs_enabled else None,
)
_init_sentry()

# Services receive the cache explicitly through get_policy_cache / get_policy_store.
app.state.policy_store = SqlPolicyStore(SessionLocal)
app.state.policy_cache = PolicyRuntimeCache(app.state.policy_store)


@app.on_event("startup")
async def warm_policy_cache():
    """Load stored overrides once; on failure keep serving documented defaults."""
    if not settings.POLICY_REFRESH_ON_STARTUP:
        return
    try:
        snapshot = app.state.policy_cache.refresh()
        logger.info(f"Policy cache warmed: version {snapshot.version}")
    except StoreUnavailableError as e:
        logger.warning(f"Policy cache warm-up failed, serving defaults: {e.detail}")


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """One structured line per request, tagged with a request id echoed back to the caller."""
    request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
    request.state.request_id = request_id
    fields = {
        "request_id": request_id,
        "method": request.method,
        "path": request.url.path,
        "client_ip": request.client.host if request.client else None,
    }
    start_time = time.perf_counter()
    try:
        response = await call_next(request)
    except Exception as e:
        logger.error(
            f"Request failed: {request.method} {request.url.path}",
            exc_info=True,
            extra={"extra_fields": {**fields, "error": str(e)}},
        )
        raise

    elapsed_ms = round((time.perf_counter() - start_time) * 1000, 2)
    logger.info(
        f"{request.method} {request.url.path} -> {response.status_code}",
        extra={"extra_fields": {**fields, "status_code": response.status_code, "process_time_ms": elapsed_ms}},
    )
    response.headers[REQUEST_ID_HEADER] = request_id
    response.headers["X-Process-Time"] = str(elapsed_ms / 1000)
    return response


@app.exception_handler(APIException)
async def api_exception_handler(request: Request, exc: APIException):
    """Typed service errors: {"detail", "error_code"} plus the verdict for safety rejections."""
    content = {"detail": exc.detail, "error_code": exc.error_code}
    verdict = getattr(exc, "verdict", None)
    if verdict:
        content["verdict"] = verdict
    if exc.status_code >= 500:
        logger.error(
            f"{exc.error_code}: {exc.detail}",
            extra={"extra_fields": {"path": request.url.path, "error_code": exc.error_code}},
        )
    return JSONResponse(status_code=exc.status_code, content=content, headers=exc.headers)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Anything untyped is a 500 with no internals in the body."""
    logger.error(
        f"Unhandled exception: {exc}",
        exc_info=True,
        extra={"extra_fields": {"method": request.method, "path": request.url.path}},
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error", "error_code": "INTERNAL_ERROR"},
    )


@app.get("/health")
async def health():
    """
    Health check for load balancers.

    Returns:
        - 200 with the policy snapshot version in use
        - 503 when the database is unreachable
    """
    if not check_db_connection():
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "unhealthy", "database": "unavailable"},
        )
    snapshot = app.state.policy_cache.snapshot
    return {
        "status": "healthy",
        "policy_version": snapshot.version,
        "policy_refreshed_at": snapshot.refreshed_at.isoformat() if snapshot.refreshed_at else None,
        "timestamp": time.time(),
    }


@app.get("/ping")
async def ping():
    return {"pong": True}


app.include_router(plan_proposals.router)
app.include_router(policy_tuning.router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host=settings.API_HOST, port=settings.API_PORT, reload=settings.API_RELOAD)
