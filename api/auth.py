from __future__ import annotations

import logging
import secrets
from typing import Optional

from fastapi import Request
from fastapi.responses import JSONResponse

from utils.errors import AiRunError, ErrorCode, to_error_body
from utils.trace import get_trace_id

log = logging.getLogger(__name__)

PUBLIC_PATHS = frozenset({"/", "/docs", "/docs/oauth2-redirect", "/redoc", "/openapi.json", "/health"})


def check_api_key(configured: str, provided: Optional[str], trace_id: str) -> Optional[AiRunError]:
    """None when the request may proceed, else the auth failure."""
    if not configured:
        return AiRunError(ErrorCode.UNAUTHORIZED, "API key is not configured", trace_id=trace_id)
    if not provided:
        return AiRunError(ErrorCode.UNAUTHORIZED, "x-api-key header is required", trace_id=trace_id)
    if not secrets.compare_digest(provided.encode(), configured.encode()):
        return AiRunError(ErrorCode.FORBIDDEN, "Invalid API key", trace_id=trace_id)
    return None


async def api_key_auth(request: Request, call_next):
    """HTTP middleware comparing `x-api-key` against the configured secret."""
    if request.url.path in PUBLIC_PATHS:
        return await call_next(request)

    trace_id = get_trace_id(request)
    error = check_api_key(request.app.state.settings.api_key, request.headers.get("x-api-key"), trace_id)
    if error is not None:
        log.warning("[AUTH] %s %s trace=%s", request.url.path, error.code.value, trace_id)
        return JSONResponse(to_error_body(error), status_code=error.status)

    return await call_next(request)
