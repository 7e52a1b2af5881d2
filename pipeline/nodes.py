from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict

from langchain_core.runnables import RunnableConfig

from models.invoker import run_model
from pipeline.heuristics import BBOX, bbox_input, build_vision_request, has_person, parse_vision_reply
from pipeline.ingest import accept_upload, fetch_image, normalize_image
from pipeline.state import DetectionState
from utils.errors import to_error_body

log = logging.getLogger(__name__)


def _configurable(config: RunnableConfig) -> Dict[str, Any]:
    return (config or {}).get("configurable", {})


async def node_ingest(state: DetectionState, config: RunnableConfig) -> Dict[str, Any]:
    """Fetch the image by URL, or validate the uploaded bytes."""
    deps = _configurable(config)
    settings = deps["settings"]
    trace_id = state["trace_id"]

    if state.get("url"):
        log.info("[INGEST] fetching %s trace=%s", state["url"], trace_id)
        fetched = await fetch_image(
            state["url"],
            trace_id=trace_id,
            max_bytes=settings.max_image_bytes,
            timeout_ms=settings.fetch_timeout_ms,
            transport=deps.get("fetch_transport"),
        )
        if not fetched.ok:
            return {"error": fetched.error}
        data, content_type = fetched.value
        return {"raw": data, "content_type": content_type}

    accepted = accept_upload(
        state.get("upload"),
        declared_size=state.get("upload_size"),
        max_bytes=settings.max_image_bytes,
        trace_id=trace_id,
    )
    if not accepted.ok:
        return {"error": accepted.error}
    return {"raw": accepted.value, "upload": None}


async def node_normalize(state: DetectionState) -> Dict[str, Any]:
    """Transcode AVIF and settle the MIME type. Decoding runs off the loop."""
    normalized = await asyncio.to_thread(
        normalize_image,
        state["raw"],
        state.get("content_type"),
        trace_id=state["trace_id"],
    )
    if not normalized.ok:
        return {"error": normalized.error}

    asset = normalized.value
    log.info("[NORMALIZE] %s %d bytes trace=%s", asset.mime_type, asset.size_bytes, state["trace_id"])
    return {"image": asset, "raw": None}


async def node_detect(state: DetectionState, config: RunnableConfig) -> Dict[str, Any]:
    """Single model call with the strategy's input shape."""
    deps = _configurable(config)
    settings = deps["settings"]
    asset = state["image"]

    if state["strategy"] == BBOX:
        model_input = bbox_input(asset)
    else:
        model_input = build_vision_request(asset, state.get("min_area_ratio"), settings.vision_max_tokens)

    outcome = await run_model(
        deps["model_service"],
        state["model"],
        model_input,
        trace_id=state["trace_id"],
        timeout_ms=settings.ai_timeout_ms,
        recorder=deps.get("recorder"),
    )
    if not outcome.ok:
        return {"error": outcome.error}
    return {"result": outcome.value}


def node_interpret(state: DetectionState) -> Dict[str, Any]:
    """Apply the strategy's heuristic to the raw model output."""
    trace_id = state["trace_id"]
    if state["strategy"] == BBOX:
        verdict = has_person(
            state.get("result"),
            state["threshold"],
            state.get("min_area_ratio"),
            trace_id=trace_id,
        )
    else:
        verdict = parse_vision_reply(state.get("result"), trace_id=trace_id)

    if not verdict.ok:
        return {"error": verdict.error}

    log.info("[INTERPRET] strategy=%s isPerson=%s trace=%s", state["strategy"], verdict.value, trace_id)
    return {"is_person": verdict.value}


def respond(state: DetectionState) -> Dict[str, Any]:
    """Packs either the verdict or the error body."""
    error = state.get("error")
    if error is not None:
        log.warning("[RESPOND] %s %s trace=%s", error.code.value, error.message, state.get("trace_id"))
        return {"response": to_error_body(error), "status_code": error.status}

    return {"response": {"success": True, "isPerson": bool(state.get("is_person"))}, "status_code": 200}
