from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional, Protocol

from models.service import ModelService
from utils.errors import AiRunError, ErrorCode
from utils.result import Result
from utils.timeout import DEFAULT_AI_TIMEOUT_MS, RunTimeoutError, is_positive_finite, with_timeout

log = logging.getLogger(__name__)


class RunRecorder(Protocol):
    """Receives exactly one event per model invocation."""

    def record(self, event: str, fields: Dict[str, Any]) -> None:
        ...


class LoggingRecorder:
    """Default recorder: one structured log line per outcome."""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or log

    def record(self, event: str, fields: Dict[str, Any]) -> None:
        level = logging.ERROR if event == "ai_run_error" else logging.INFO
        summary = " ".join(f"{k}={v}" for k, v in fields.items() if v is not None)
        self.logger.log(level, "[AI_RUN] %s %s", event, summary, extra={"ai_run": {"event": event, **fields}})


def is_error_response(value: Any) -> bool:
    if not isinstance(value, dict):
        return False
    if value.get("success") is False:
        return True
    errors = value.get("errors")
    return isinstance(errors, list) and len(errors) > 0


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


async def run_model(
    service: ModelService,
    model: str,
    input: Any,
    options: Optional[Dict[str, Any]] = None,
    *,
    trace_id: str,
    timeout_ms: Optional[float] = None,
    recorder: Optional[RunRecorder] = None,
) -> Result[Any]:
    """
    Single deadline-bounded call to the model service.

    `options` may carry `timeoutMs` / `traceId` overrides; everything else
    is forwarded to the service. The payload is returned as-is unless it
    signals failure. Every failure is an `AiRunError` in the result.
    """
    recorder = recorder or LoggingRecorder()
    service_options = dict(options or {})
    override_timeout = service_options.pop("timeoutMs", None)
    override_trace = service_options.pop("traceId", None)

    trace_id = override_trace or trace_id
    if is_positive_finite(override_timeout):
        timeout_ms = override_timeout
    if not is_positive_finite(timeout_ms):
        timeout_ms = DEFAULT_AI_TIMEOUT_MS

    started = time.monotonic()
    outcome = await with_timeout(service.run(model, input, service_options), timeout_ms)
    duration_ms = _elapsed_ms(started)

    if outcome.ok and not is_error_response(outcome.value):
        recorder.record(
            "ai_run_success",
            {"model": model, "durationMs": duration_ms, "traceId": trace_id},
        )
        return outcome

    if outcome.ok:
        error = AiRunError(
            ErrorCode.AI_RUN_RESPONSE_ERROR,
            "AI run returned an error response",
            trace_id=trace_id,
            duration_ms=duration_ms,
            raw=outcome.value,
        )
    elif isinstance(outcome.error, RunTimeoutError):
        error = AiRunError(
            ErrorCode.AI_RUN_TIMEOUT,
            str(outcome.error),
            trace_id=trace_id,
            duration_ms=duration_ms,
            cause=outcome.error,
        )
    elif isinstance(outcome.error, AiRunError):
        error = outcome.error
    else:
        error = AiRunError(
            ErrorCode.AI_RUN_EXCEPTION,
            "AI run threw an exception",
            trace_id=trace_id,
            duration_ms=duration_ms,
            cause=outcome.error,
        )

    recorder.record(
        "ai_run_error",
        {
            "model": model,
            "errorCode": error.code.value,
            "message": error.message,
            "durationMs": error.duration_ms,
            "traceId": error.trace_id,
        },
    )
    return Result.failure(error)
