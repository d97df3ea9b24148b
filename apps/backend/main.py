"""Точка входа FastAPI."""
import logging
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from apps.backend.middleware.trace_id import TraceIdMiddleware, SCOPE_KEY
from apps.backend.routers import health, outbox, wa_webhook

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    # shutdown


app = FastAPI(
    title="WA Relay",
    description="WhatsApp outbox relay and webhook reconciliation",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(TraceIdMiddleware)

app.include_router(health.router, tags=["System"])
app.include_router(outbox.router, prefix="/v1/outbox", tags=["Outbox"])
app.include_router(wa_webhook.router, prefix="/v1/wa", tags=["WhatsApp Webhook"])


def _trace_id(request: Request) -> str:
    return request.scope.get(SCOPE_KEY) or str(uuid.uuid4())[:16]


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    detail = exc.detail
    if not isinstance(detail, str):
        detail = str(detail) if detail else "Error"
    resp = JSONResponse(content={"detail": detail}, status_code=exc.status_code)
    resp.headers["X-Trace-Id"] = _trace_id(request)
    return resp


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Never return HTML: log with trace_id and answer JSON 500."""
    trace_id = _trace_id(request)
    logger.exception("Unhandled exception trace_id=%s path=%s", trace_id, request.url.path)
    resp = JSONResponse(
        content={"error": "internal_error", "trace_id": trace_id, "message": str(exc)[:200]},
        status_code=500,
    )
    resp.headers["X-Trace-Id"] = trace_id
    return resp
