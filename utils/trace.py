from __future__ import annotations

import uuid

from starlette.requests import HTTPConnection

TRACE_HEADERS = ("x-request-id", "x-trace-id", "cf-ray")


def get_trace_id(request: HTTPConnection) -> str:
    """First present tracing header, else a fresh random id."""
    for header in TRACE_HEADERS:
        value = request.headers.get(header)
        if value:
            return value
    return uuid.uuid4().hex
