from __future__ import annotations

import json
import logging
import math
from typing import Any, Dict, List, Optional, Sequence

from utils.errors import AiRunError, ErrorCode
from utils.images import ImageAsset, to_data_uri
from utils.result import Result

log = logging.getLogger(__name__)

BBOX = "bbox"
VISION = "vision"

# Corner conventions, tried in order; each is (x_min, y_min, x_max, y_max).
CORNER_KEYS = (
    ("xmin", "ymin", "xmax", "ymax"),
    ("x1", "y1", "x2", "y2"),
    ("left", "top", "right", "bottom"),
    ("x0", "y0", "x1", "y1"),
)

VISION_SCHEMA = {
    "type": "object",
    "properties": {"isPerson": {"type": "boolean"}},
    "required": ["isPerson"],
}


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value):
        return None
    return float(value)


def _first_number(box: Dict[str, Any], *keys: str) -> Optional[float]:
    for key in keys:
        if box.get(key) is not None:
            return _number(box[key])
    return None


def normalized_area(width: float, height: float) -> Optional[float]:
    """Area of a box in 0-1 normalized coordinates, or None if implausible."""
    if not math.isfinite(width) or not math.isfinite(height):
        return None
    if width <= 0 or height <= 0:
        return None
    if width > 1 or height > 1:
        return None
    return width * height


def extract_area_ratio(box: Any) -> Optional[float]:
    """
    Box area as a fraction of the image, from whichever key convention the
    model used. Returns None when the box cannot be read.
    """
    if isinstance(box, dict):
        for x1k, y1k, x2k, y2k in CORNER_KEYS:
            corners = [_number(box.get(k)) for k in (x1k, y1k, x2k, y2k)]
            if all(c is not None for c in corners):
                x1, y1, x2, y2 = corners
                return normalized_area(x2 - x1, y2 - y1)

        width = _first_number(box, "w", "width")
        height = _first_number(box, "h", "height")
        if width is not None and height is not None:
            return normalized_area(width, height)
        return None

    if isinstance(box, (list, tuple)) and len(box) >= 4:
        corners = [_number(v) for v in box[:4]]
        if all(c is not None for c in corners):
            x1, y1, x2, y2 = corners
            return normalized_area(x2 - x1, y2 - y1)

    return None


def is_person_detection(record: Any, threshold: float, min_area_ratio: Optional[float]) -> bool:
    if not isinstance(record, dict):
        return False
    score = _number(record.get("score"))
    if record.get("label") != "person" or score is None:
        return False
    if score < threshold:
        return False
    if min_area_ratio is None:
        return True

    ratio = extract_area_ratio(record.get("box"))
    if ratio is None:
        # Unreadable or missing box: accepted on label and score alone.
        return True
    return ratio >= min_area_ratio


def has_person(
    result: Any,
    threshold: float,
    min_area_ratio: Optional[float],
    *,
    trace_id: Optional[str] = None,
) -> Result[bool]:
    """
    Bounding-box strategy: true iff any detection is a `person` at or above
    `threshold` whose box covers at least `min_area_ratio` of the image.
    A payload that is not a list of detections answers false.
    """
    detections = result
    if isinstance(result, dict) and isinstance(result.get("result"), list):
        detections = result["result"]

    if not isinstance(detections, list):
        log.info("[INTERPRET] no detection list in %s reply trace=%s", type(result).__name__, trace_id)
        return Result.success(False)

    return Result.success(
        any(is_person_detection(d, threshold, min_area_ratio) for d in detections)
    )


def build_vision_request(asset: ImageAsset, min_area_ratio: Optional[float], max_tokens: int) -> Dict[str, Any]:
    """Single-turn JSON-only instruction with the image inlined as a data URI."""
    instruction = (
        "Look at the image and decide whether it shows a person. "
        "Respond with JSON only, exactly in the form {\"isPerson\": true} or {\"isPerson\": false}."
    )
    if min_area_ratio:
        instruction += (
            f" Only answer true if a person occupies at least {min_area_ratio:.0%} of the image area."
        )

    return {
        "messages": [
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": instruction},
                    {"type": "image_url", "image_url": {"url": to_data_uri(asset)}},
                ],
            }
        ],
        "response_format": {"type": "json_schema", "json_schema": VISION_SCHEMA},
        "temperature": 0,
        "max_tokens": max_tokens,
    }


def _unwrap_reply(reply: Any) -> Any:
    if isinstance(reply, dict):
        if "response" in reply:
            return reply["response"]
        inner = reply.get("result")
        if isinstance(inner, dict) and "response" in inner:
            return inner["response"]
    return reply


def _parse_json_text(text: str) -> Any:
    try:
        return json.loads(text)
    except ValueError:
        pass

    start, end = text.find("{"), text.rfind("}")
    if start == -1 or end <= start:
        return None
    try:
        return json.loads(text[start:end + 1])
    except ValueError:
        return None


def parse_vision_reply(reply: Any, *, trace_id: Optional[str] = None) -> Result[bool]:
    """
    Vision-language strategy: pull a boolean `isPerson` out of the reply,
    which may be an object already or JSON buried in free text.
    """
    payload = _unwrap_reply(reply)
    if isinstance(payload, str):
        payload = _parse_json_text(payload)

    if isinstance(payload, dict) and isinstance(payload.get("isPerson"), bool):
        return Result.success(payload["isPerson"])

    return Result.failure(
        AiRunError(
            ErrorCode.AI_RUN_RESPONSE_ERROR,
            "Model reply did not contain a boolean isPerson",
            trace_id=trace_id,
            raw=reply,
        )
    )


def select_strategy(model: Optional[str], strategy: Optional[str], bbox_models: Sequence[str]) -> str:
    """Explicit strategy wins; otherwise known detection models use bbox."""
    if strategy in (BBOX, VISION):
        return strategy
    if model is None or model in bbox_models:
        return BBOX
    return VISION


def bbox_input(asset: ImageAsset) -> Dict[str, List[int]]:
    return {"image": list(asset.data)}
