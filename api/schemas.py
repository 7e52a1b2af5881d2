from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field, HttpUrl

ErrorCodeLiteral = Literal[
    "INVALID_INPUT",
    "UNAUTHORIZED",
    "FORBIDDEN",
    "AI_RUN_TIMEOUT",
    "AI_RUN_EXCEPTION",
    "AI_RUN_RESPONSE_ERROR",
]


class AiRunRequest(BaseModel):
    model: str = Field(min_length=1, description="Model id, e.g. @cf/meta/llama-3.1-8b-instruct.")
    input: Any = None
    options: Optional[Dict[str, Any]] = None


class PersonDetectRequest(BaseModel):
    url: HttpUrl = Field(description="Public image URL to fetch and analyze.")
    threshold: Optional[float] = Field(default=None, ge=0, le=1, description="Confidence threshold.")
    minAreaRatio: Optional[float] = Field(
        default=None, ge=0, le=1, description="Minimum person box area ratio (0-1). Default is 0.2."
    )
    model: Optional[str] = Field(default=None, description="Optional model override.")
    strategy: Optional[Literal["bbox", "vision"]] = Field(
        default=None, description="Interpretation strategy; inferred from the model when omitted."
    )


class PersonDetectResponse(BaseModel):
    success: Literal[True] = True
    isPerson: bool


class ErrorDetail(BaseModel):
    code: ErrorCodeLiteral
    message: str
    traceId: Optional[str] = None
    durationMs: Optional[int] = None
    raw: Any = None
    cause: Any = None


class ErrorResponse(BaseModel):
    success: Literal[False] = False
    error: ErrorDetail


ERROR_RESPONSES: Dict[int, Dict[str, Any]] = {
    status: {"model": ErrorResponse, "description": description}
    for status, description in (
        (400, "Invalid request"),
        (401, "Missing API key"),
        (403, "Invalid API key"),
        (500, "Server error"),
        (502, "Upstream error"),
        (504, "Upstream timeout"),
    )
}

UPLOAD_FORM_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["file"],
    "properties": {
        "file": {"type": "string", "format": "binary", "description": "Image file to upload and analyze."},
        "threshold": {"type": "string", "description": "Confidence threshold for person detection."},
        "minAreaRatio": {"type": "string", "description": "Minimum person box area ratio (0-1)."},
        "model": {"type": "string", "description": "Optional model override."},
        "strategy": {"type": "string", "enum": ["bbox", "vision"]},
    },
}
