from __future__ import annotations

import asyncio
import io
from typing import Any, Dict, List, Optional

import pytest
from PIL import Image

from api.config import Settings

API_KEY = "test-secret"


class FakeModelService:
    """Stands in for the model service; records every call."""

    def __init__(self, result: Any = None, exc: Optional[BaseException] = None, delay: float = 0.0):
        self.result = result
        self.exc = exc
        self.delay = delay
        self.calls: List[Dict[str, Any]] = []

    async def run(self, model: str, input: Any, options: Optional[Dict[str, Any]] = None) -> Any:
        self.calls.append({"model": model, "input": input, "options": options})
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.exc is not None:
            raise self.exc
        return self.result


class ListRecorder:
    def __init__(self):
        self.events: List[tuple] = []

    def record(self, event: str, fields: Dict[str, Any]) -> None:
        self.events.append((event, fields))


def make_png(size=(4, 4), color=(200, 10, 10)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture
def settings() -> Settings:
    return Settings(api_key=API_KEY, cf_account_id="acct", cf_api_token="token", _env_file=None)


@pytest.fixture
def png_bytes() -> bytes:
    return make_png()


@pytest.fixture
def recorder() -> ListRecorder:
    return ListRecorder()
