from __future__ import annotations

import asyncio
import logging
from typing import Optional, Tuple

import httpx

from utils.errors import AiRunError, ErrorCode
from utils.images import TARGET_MIME, ImageAsset, is_avif, resolve_mime, transcode_to_png
from utils.result import Result

log = logging.getLogger(__name__)

FETCH_TIMEOUT_MS = 15_000


def _too_large(trace_id: str) -> AiRunError:
    return AiRunError(ErrorCode.INVALID_INPUT, "Image is too large", trace_id=trace_id)


async def _download(
    url: str,
    *,
    trace_id: str,
    max_bytes: int,
    transport: Optional[httpx.AsyncBaseTransport],
) -> Tuple[bytes, Optional[str]]:
    async with httpx.AsyncClient(transport=transport, follow_redirects=True, timeout=None) as client:
        async with client.stream("GET", url) as resp:
            if not resp.is_success:
                raise AiRunError(
                    ErrorCode.INVALID_INPUT,
                    f"Failed to fetch image: {resp.status_code}",
                    status=502,
                    trace_id=trace_id,
                )

            declared = resp.headers.get("content-length", "")
            if declared.isdigit() and int(declared) > max_bytes:
                raise _too_large(trace_id)

            body = bytearray()
            async for chunk in resp.aiter_bytes():
                body.extend(chunk)
                if len(body) > max_bytes:
                    raise _too_large(trace_id)

            return bytes(body), resp.headers.get("content-type")


async def fetch_image(
    url: str,
    *,
    trace_id: str,
    max_bytes: int,
    timeout_ms: float = FETCH_TIMEOUT_MS,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Result[Tuple[bytes, Optional[str]]]:
    """
    Download an image with a deadline and a size cap.

    The deadline cancels the download outright. Returns
    `(bytes, declared content-type)` on success.
    """
    try:
        fetched = await asyncio.wait_for(
            _download(url, trace_id=trace_id, max_bytes=max_bytes, transport=transport),
            timeout=timeout_ms / 1000,
        )
    except AiRunError as err:
        return Result.failure(err)
    except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
        return Result.failure(
            AiRunError(ErrorCode.AI_RUN_TIMEOUT, "Image fetch timed out", trace_id=trace_id, cause=exc)
        )
    except Exception as exc:
        log.warning("[INGEST] fetch failed trace=%s: %r", trace_id, exc)
        return Result.failure(
            AiRunError(ErrorCode.AI_RUN_EXCEPTION, "Failed to fetch image", trace_id=trace_id, cause=exc)
        )

    log.info("[INGEST] fetched %d bytes trace=%s", len(fetched[0]), trace_id)
    return Result.success(fetched)


def accept_upload(
    data: Optional[bytes],
    *,
    declared_size: Optional[int],
    max_bytes: int,
    trace_id: str,
) -> Result[bytes]:
    """Validate an uploaded file part against the size cap."""
    if data is None:
        return Result.failure(AiRunError(ErrorCode.INVALID_INPUT, "file is required", trace_id=trace_id))
    if (declared_size is not None and declared_size > max_bytes) or len(data) > max_bytes:
        return Result.failure(_too_large(trace_id))
    return Result.success(data)


def normalize_image(data: bytes, content_type: Optional[str], *, trace_id: str) -> Result[ImageAsset]:
    """
    AVIF is decoded and re-encoded as PNG; anything else keeps its bytes and
    gets a resolved `image/*` type (declared, sniffed, or PNG as last resort).
    """
    if is_avif(data, content_type):
        try:
            png = transcode_to_png(data)
        except Exception as exc:
            return Result.failure(
                AiRunError(ErrorCode.INVALID_INPUT, "Failed to decode AVIF image", trace_id=trace_id, cause=exc)
            )
        log.info("[INGEST] transcoded AVIF %d -> PNG %d bytes trace=%s", len(data), len(png), trace_id)
        return Result.success(ImageAsset(data=png, mime_type=TARGET_MIME, size_bytes=len(png)))

    mime_type = resolve_mime(data, content_type)
    return Result.success(ImageAsset(data=data, mime_type=mime_type, size_bytes=len(data)))
