"""Main FastAPI application."""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .api import ledger, reconcile
from .errors import ErrorCode, MatchingError
from .health import get_health_status

logger = logging.getLogger(__name__)

app = FastAPI(title="Ledgermatch", version="1.0.0")
app.include_router(reconcile.router)
app.include_router(ledger.router)

STATUS_CODES = {
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.UNAUTHORIZED: 403,
    ErrorCode.BUSINESS_RULE: 400,
    ErrorCode.UPSTREAM_UNAVAILABLE: 503,
}


@app.exception_handler(MatchingError)
async def matching_error_handler(request: Request, exc: MatchingError):
    """Translate service errors into client responses."""
    if exc.code == ErrorCode.UPSTREAM_UNAVAILABLE:
        logger.warning(f"{request.method} {request.url.path}: {exc.message}")
    return JSONResponse(content=exc.to_dict(), status_code=STATUS_CODES[exc.code])


@app.get("/")
async def root():
    return {"message": "Ledgermatch running"}


@app.get("/health")
async def health():
    """Liveness probe - always returns OK if app is running."""
    return {"status": "ok"}


@app.get("/health/ready")
async def health_ready():
    """Readiness probe - fails only when a required dependency is down."""
    status = await get_health_status()
    code = 503 if status["status"] == "unhealthy" else 200
    return JSONResponse(content=status, status_code=code)


@app.get("/health/full")
async def health_full():
    """Full health check with details."""
    return await get_health_status()
