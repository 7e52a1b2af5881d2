from typing import Any, Dict, Optional, TypedDict

from utils.errors import AiRunError
from utils.images import ImageAsset


class DetectionState(TypedDict, total=False):
    """
    State passed between LangGraph nodes for one detection request.

    Exactly one of `url` / `upload` is set on entry.
    """

    trace_id: str

    # Source
    url: Optional[str]
    upload: Optional[bytes]
    upload_size: Optional[int]  # declared by the multipart part
    content_type: Optional[str]  # declared by the upload or fetch response

    # Request knobs
    threshold: float
    min_area_ratio: Optional[float]
    model: str
    strategy: str  # "bbox" | "vision"

    # Raw bytes after ingestion, then the normalized asset
    raw: Optional[bytes]
    image: Optional[ImageAsset]

    # Model output and interpretation
    result: Any
    is_person: Optional[bool]

    # First failure; routes straight to `respond`
    error: Optional[AiRunError]

    # Filled by `respond`
    response: Dict[str, Any]
    status_code: int
