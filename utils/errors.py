from __future__ import annotations

import base64
from enum import Enum
from typing import Any, Dict, Optional

from fastapi.encoders import jsonable_encoder


class ErrorCode(str, Enum):
    INVALID_INPUT = "INVALID_INPUT"
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    AI_RUN_TIMEOUT = "AI_RUN_TIMEOUT"
    AI_RUN_EXCEPTION = "AI_RUN_EXCEPTION"
    AI_RUN_RESPONSE_ERROR = "AI_RUN_RESPONSE_ERROR"


DEFAULT_STATUS: Dict[ErrorCode, int] = {
    ErrorCode.INVALID_INPUT: 400,
    ErrorCode.UNAUTHORIZED: 401,
    ErrorCode.FORBIDDEN: 403,
    ErrorCode.AI_RUN_TIMEOUT: 504,
    ErrorCode.AI_RUN_EXCEPTION: 500,
    ErrorCode.AI_RUN_RESPONSE_ERROR: 502,
}


class AiRunError(Exception):
    """
    The single error type that crosses component and HTTP boundaries.

    Args:
        code: One of `ErrorCode`.
        message: Human readable summary, safe to return to callers.
        status: HTTP status; defaults to the code's fixed status.
        trace_id: Per-request correlation id.
        duration_ms: Elapsed time when the failure was measured.
        raw: Upstream payload, set only when it is the diagnostic itself.
        cause: The underlying exception or value, if any.
    """

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        status: Optional[int] = None,
        trace_id: Optional[str] = None,
        duration_ms: Optional[int] = None,
        raw: Any = None,
        cause: Any = None,
    ):
        super().__init__(message)
        self.code = ErrorCode(code)
        self.message = message
        self.status = status if status is not None else DEFAULT_STATUS[self.code]
        self.trace_id = trace_id
        self.duration_ms = duration_ms
        self.raw = raw
        self.cause = cause

    def __repr__(self) -> str:
        return f"AiRunError(code={self.code.value!r}, status={self.status}, message={self.message!r})"


def serialize_cause(cause: Any) -> Any:
    if isinstance(cause, BaseException):
        return {"name": type(cause).__name__, "message": str(cause)}
    return str(cause)


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def serialize_raw(raw: Any) -> Any:
    """Binary replies travel as base64; everything else must be JSON encodable."""
    if isinstance(raw, (bytes, bytearray, memoryview)):
        return _b64(bytes(raw))
    return jsonable_encoder(raw, custom_encoder={bytes: _b64})


def to_error_body(error: AiRunError) -> Dict[str, Any]:
    """Wire form of an `AiRunError`; unset optional fields are omitted."""
    detail: Dict[str, Any] = {
        "code": error.code.value,
        "message": error.message,
    }
    if error.trace_id:
        detail["traceId"] = error.trace_id
    if isinstance(error.duration_ms, (int, float)):
        detail["durationMs"] = error.duration_ms
    if error.raw is not None:
        detail["raw"] = serialize_raw(error.raw)
    if error.cause is not None:
        detail["cause"] = serialize_cause(error.cause)

    return {"success": False, "error": detail}
