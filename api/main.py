from __future__ import annotations

import logging
import math
from typing import Any, Dict, Optional

import httpx
from fastapi import FastAPI, Request, Security
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from fastapi.security import APIKeyHeader
from pydantic import ValidationError
from starlette.datastructures import UploadFile

from api.auth import api_key_auth
from api.config import Settings, get_settings
from api.schemas import (
    ERROR_RESPONSES,
    UPLOAD_FORM_SCHEMA,
    AiRunRequest,
    PersonDetectRequest,
    PersonDetectResponse,
)
from models.invoker import RunRecorder, run_model
from models.service import ModelService, get_model_service
from pipeline.graph import pipeline
from pipeline.heuristics import BBOX, VISION, select_strategy
from pipeline.state import DetectionState
from utils.errors import AiRunError, ErrorCode, to_error_body
from utils.result import Result
from utils.trace import get_trace_id

logging.basicConfig(level=get_settings().log_level)
log = logging.getLogger(__name__)

# Documents the header in OpenAPI; enforcement lives in `api_key_auth`.
api_key_header = APIKeyHeader(name="x-api-key", auto_error=False)


def error_response(error: AiRunError) -> JSONResponse:
    return JSONResponse(to_error_body(error), status_code=error.status)


def parse_threshold(value: Any) -> Optional[float]:
    """Form fields arrive as strings; anything non-numeric is ignored."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    if isinstance(value, str) and value.strip():
        try:
            parsed = float(value)
        except ValueError:
            return None
        return parsed if math.isfinite(parsed) else None
    return None


def parse_ratio(value: Any) -> Optional[float]:
    parsed = parse_threshold(value)
    if parsed is not None and 0 <= parsed <= 1:
        return parsed
    return None


def is_json_content_type(content_type: str) -> bool:
    value = content_type.lower()
    return "application/json" in value or "+json" in value


def _invalid(message: str, trace_id: str, cause: Any = None) -> Result[Dict[str, Any]]:
    return Result.failure(AiRunError(ErrorCode.INVALID_INPUT, message, trace_id=trace_id, cause=cause))


async def read_upload_request(request: Request, trace_id: str, max_bytes: int) -> Result[Dict[str, Any]]:
    try:
        async with request.form() as form:
            file = form.get("file")
            if not isinstance(file, UploadFile):
                return _invalid("file is required", trace_id)

            # Reading one byte past the cap is enough to reject oversized parts.
            data = await file.read(max_bytes + 1)
            model = form.get("model")
            fields = {
                "upload": data,
                "upload_size": file.size,
                "content_type": file.content_type,
                "threshold": parse_threshold(form.get("threshold")),
                "min_area_ratio": parse_ratio(form.get("minAreaRatio")),
                "model": model if isinstance(model, str) and model else None,
                "strategy": form.get("strategy") if form.get("strategy") in (BBOX, VISION) else None,
            }
    except Exception as exc:
        return _invalid("Invalid multipart body", trace_id, exc)

    return Result.success(fields)


async def read_json_request(request: Request, trace_id: str) -> Result[Dict[str, Any]]:
    try:
        body = await request.json()
    except ValueError as exc:
        return _invalid("Request body must be valid JSON", trace_id, exc)

    try:
        parsed = PersonDetectRequest.model_validate(body)
    except ValidationError as exc:
        return _invalid("Request body must be valid JSON", trace_id, exc)

    return Result.success(
        {
            "url": str(parsed.url),
            "threshold": parsed.threshold,
            "min_area_ratio": parsed.minAreaRatio,
            "model": parsed.model,
            "strategy": parsed.strategy,
        }
    )


def build_initial_state(fields: Dict[str, Any], settings: Settings, trace_id: str) -> DetectionState:
    strategy = select_strategy(fields.get("model"), fields.get("strategy"), settings.bbox_models)
    model = fields.get("model") or (settings.detection_model if strategy == BBOX else settings.vision_model)

    threshold = fields.get("threshold")
    min_area_ratio = fields.get("min_area_ratio")
    if min_area_ratio is None and strategy == BBOX:
        min_area_ratio = settings.default_min_area_ratio

    return {
        "trace_id": trace_id,
        "url": fields.get("url"),
        "upload": fields.get("upload"),
        "upload_size": fields.get("upload_size"),
        "content_type": fields.get("content_type"),
        "threshold": settings.default_threshold if threshold is None else threshold,
        "min_area_ratio": min_area_ratio,
        "model": model,
        "strategy": strategy,
        "error": None,
    }


def create_app(
    settings: Optional[Settings] = None,
    service: Optional[ModelService] = None,
    fetch_transport: Optional[httpx.AsyncBaseTransport] = None,
    recorder: Optional[RunRecorder] = None,
) -> FastAPI:
    """
    Build the API. Overrides exist for tests; production uses env settings
    and the Workers AI REST service.
    """
    settings = settings or get_settings()

    app = FastAPI(
        title="AI Run Gateway",
        version="0.1.0",
        description="Workers AI passthrough and person detection (bounding boxes or vision-language).",
    )
    app.state.settings = settings
    app.state.model_service = service
    app.state.fetch_transport = fetch_transport
    app.state.recorder = recorder

    app.middleware("http")(api_key_auth)
    # Outermost, so preflight requests never reach the key check
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def model_service() -> ModelService:
        if app.state.model_service is None:
            app.state.model_service = get_model_service(settings)
        return app.state.model_service

    @app.exception_handler(RequestValidationError)
    async def validation_failed(request: Request, exc: RequestValidationError):
        error = AiRunError(
            ErrorCode.INVALID_INPUT,
            "Request validation failed",
            trace_id=get_trace_id(request),
            cause=exc,
        )
        return error_response(error)

    @app.exception_handler(Exception)
    async def unhandled(request: Request, exc: Exception):
        trace_id = get_trace_id(request)
        log.exception("[API] unhandled error trace=%s", trace_id)
        return error_response(
            AiRunError(ErrorCode.AI_RUN_EXCEPTION, "Unexpected server error", trace_id=trace_id, cause=exc)
        )

    @app.get("/")
    def home():
        """
        Service banner with pointers to the docs.
        """
        return {
            "success": True,
            "message": app.title,
            "version": app.version,
            "documentation": "/docs",
            "openapi": "/openapi.json",
        }

    @app.get("/health")
    def health():
        """
        Basic health check.
        """
        return {"status": "ok"}

    @app.post(
        "/ai/run",
        tags=["AI"],
        responses=ERROR_RESPONSES,
        dependencies=[Security(api_key_header)],
    )
    async def ai_run(body: AiRunRequest, request: Request):
        """
        Run any model and pass its payload through (JSON, or bytes for image models).
        """
        trace_id = get_trace_id(request)
        outcome = await run_model(
            model_service(),
            body.model,
            body.input,
            body.options,
            trace_id=trace_id,
            timeout_ms=settings.ai_timeout_ms,
            recorder=app.state.recorder,
        )
        if not outcome.ok:
            return error_response(outcome.error)

        result = outcome.value
        if isinstance(result, (bytes, bytearray, memoryview)):
            return Response(content=bytes(result), media_type="application/octet-stream")
        if hasattr(result, "__aiter__"):
            return StreamingResponse(result, media_type="application/octet-stream")
        return JSONResponse(jsonable_encoder(result))

    @app.post(
        "/ai/vision/person-detect",
        tags=["AI", "Vision"],
        response_model=PersonDetectResponse,
        responses=ERROR_RESPONSES,
        dependencies=[Security(api_key_header)],
        openapi_extra={
            "requestBody": {
                "required": True,
                "content": {
                    "application/json": {"schema": PersonDetectRequest.model_json_schema()},
                    "multipart/form-data": {"schema": UPLOAD_FORM_SCHEMA},
                },
            }
        },
    )
    async def person_detect(request: Request):
        """
        Decide whether an image (public URL or uploaded file) shows a person.
        """
        trace_id = get_trace_id(request)
        content_type = request.headers.get("content-type", "")

        if "multipart/form-data" in content_type.lower():
            fields = await read_upload_request(request, trace_id, settings.max_image_bytes)
        elif content_type and not is_json_content_type(content_type):
            fields = _invalid("Unsupported content-type", trace_id)
        else:
            fields = await read_json_request(request, trace_id)

        if not fields.ok:
            return error_response(fields.error)

        initial = build_initial_state(fields.value, settings, trace_id)
        log.info(
            "[DETECT] strategy=%s model=%s source=%s trace=%s",
            initial["strategy"],
            initial["model"],
            "url" if initial.get("url") else "upload",
            trace_id,
        )

        try:
            final = await pipeline.ainvoke(
                initial,
                config={
                    "configurable": {
                        "settings": settings,
                        "model_service": model_service(),
                        "fetch_transport": app.state.fetch_transport,
                        "recorder": app.state.recorder,
                    }
                },
            )
        except Exception as exc:
            log.exception("[DETECT] pipeline crashed trace=%s", trace_id)
            return error_response(
                AiRunError(ErrorCode.AI_RUN_EXCEPTION, "Person detection failed", trace_id=trace_id, cause=exc)
            )

        return JSONResponse(final["response"], status_code=final["status_code"])

    return app


app = create_app()
