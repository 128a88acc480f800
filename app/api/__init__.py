"""
API module: HTTP endpoints for sign-in, referrals, signatures, wallets and health.

Error responses share one envelope: {"success": false, "error": CODE, "message": text}.
"""
import logging
import time
from typing import Optional

import asyncpg
import redis.exceptions
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.api import admin, auth, referral, signature, wallet
from app.api.dependencies import ApiServices, build_services
from app.core.exceptions import (
    AuthenticationRequiredError,
    ConflictError,
    DependencyUnavailableError,
    SignatureCampaignError,
    ValidationError,
)
from app.services.referrals import ReferralCodeExhaustedError, ReferralNotFoundError
from app.services.wallets import WalletNotFoundError
from app.utils.logging_helpers import (
    generate_correlation_id,
    log_request,
    set_correlation_id,
)

logger = logging.getLogger(__name__)

CORRELATION_HEADER = "X-Request-ID"

_NOT_FOUND_ERRORS = (ReferralNotFoundError, WalletNotFoundError)


def _error_response(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse({"success": False, "error": code, "message": message}, status_code=status_code)


def _classify_domain_error(exc: SignatureCampaignError) -> tuple[int, str]:
    if isinstance(exc, AuthenticationRequiredError):
        return 401, "UNAUTHORIZED"
    if isinstance(exc, ValidationError):
        return 400, getattr(exc, "code", "VALIDATION_FAILED")
    if isinstance(exc, ConflictError):
        return 409, getattr(exc, "code", "ALREADY_EXISTS")
    if isinstance(exc, _NOT_FOUND_ERRORS):
        return 404, getattr(exc, "code", "NOT_FOUND")
    if isinstance(exc, (ReferralCodeExhaustedError, DependencyUnavailableError)):
        return 503, "SERVICE_UNAVAILABLE"
    return 500, "SERVER_ERROR"


def create_app(services: Optional[ApiServices] = None) -> FastAPI:
    """
    Build the FastAPI application.

    `services` defaults to build_services() over the database module with no
    Redis; main.py passes the fully wired container.
    """
    app = FastAPI(title="signature-campaign", docs_url=None, redoc_url=None)
    app.state.services = services or build_services()

    @app.middleware("http")
    async def correlation_id_middleware(request: Request, call_next):
        correlation_id = (request.headers.get(CORRELATION_HEADER) or generate_correlation_id())[:64]
        set_correlation_id(correlation_id)
        started = time.monotonic()
        try:
            response = await call_next(request)
        except Exception:
            log_request(request.method, request.url.path, 500, (time.monotonic() - started) * 1000)
            raise
        response.headers[CORRELATION_HEADER] = correlation_id
        log_request(request.method, request.url.path, response.status_code, (time.monotonic() - started) * 1000)
        return response

    @app.exception_handler(SignatureCampaignError)
    async def domain_error_handler(request: Request, exc: SignatureCampaignError):
        status_code, code = _classify_domain_error(exc)
        if status_code >= 500:
            logger.error(f"REQUEST_FAILED path={request.url.path} error={type(exc).__name__}: {str(exc)[:200]}")
            message = "Service temporarily unavailable" if status_code == 503 else "Internal server error"
        else:
            message = str(exc)
        return _error_response(status_code, code, message)

    @app.exception_handler(asyncpg.PostgresError)
    @app.exception_handler(redis.exceptions.RedisError)
    async def dependency_error_handler(request: Request, exc: Exception):
        logger.warning(f"DEPENDENCY_UNAVAILABLE path={request.url.path} error={type(exc).__name__}: {str(exc)[:100]}")
        return _error_response(503, "SERVICE_UNAVAILABLE", "Service temporarily unavailable")

    app.include_router(auth.router)
    app.include_router(referral.router)
    app.include_router(signature.router)
    app.include_router(wallet.router)
    app.include_router(admin.router)

    @app.get("/health")
    async def health(request: Request):
        """Readiness of the backing stores. Always 200."""
        svc: ApiServices = request.app.state.services
        db_ready = bool(getattr(svc.db, "DB_READY", False))
        redis_ready = False
        if svc.redis_client is not None:
            try:
                redis_ready = bool(await svc.redis_client.ping())
            except (redis.exceptions.RedisError, OSError):
                redis_ready = False
        return JSONResponse({
            "status": "ok" if db_ready and redis_ready else "degraded",
            "database": db_ready,
            "redis": redis_ready,
            "kolEntries": svc.kol_index.count,
        })

    return app
