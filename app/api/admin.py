"""
Operator endpoints, guarded by the X-Admin-Key header.
"""
import hmac
import logging

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse

import config
from app.api.dependencies import ApiServices, get_services
from app.core.structured_logger import log_event

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin")


def _forbidden(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse({"success": False, "error": code, "message": message}, status_code=status_code)


@router.post("/kol/reload")
async def reload_kol_list(
    request: Request,
    x_admin_key: str | None = Header(default=None),
    services: ApiServices = Depends(get_services),
):
    if not config.ADMIN_API_KEY:
        logger.error("ADMIN_API_KEY not configured")
        return _forbidden(503, "ADMIN_DISABLED", "Admin API is not configured")

    if not x_admin_key or not hmac.compare_digest(x_admin_key.encode(), config.ADMIN_API_KEY.encode()):
        logger.warning(
            "ADMIN_KEY_MISMATCH ip=%s",
            request.client.host if request.client else "unknown"
        )
        return _forbidden(403, "FORBIDDEN", "Invalid admin key")

    count = await services.kol_index.reload()
    log_event(
        logger,
        component="admin",
        operation="kol_reload",
        outcome="success",
        entries=count,
    )
    return {"success": True, "count": count}
