from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Protocol

import httpx

log = logging.getLogger(__name__)

_service: Optional["ModelService"] = None


class ModelService(Protocol):
    """
    The Model Execution Service: runs a named model against an input payload.

    Implementations may return parsed JSON, raw bytes or an async byte
    iterator, and may raise on transport failures.
    """

    async def run(self, model: str, input: Any, options: Optional[Dict[str, Any]] = None) -> Any:
        ...


class WorkersAIService:
    """
    REST client for Workers AI (`POST /accounts/{id}/ai/run/{model}`).

    JSON bodies are returned parsed, failure envelopes included, so the
    invoker can classify them. Non-JSON success bodies (image models)
    come back as bytes.
    """

    def __init__(
        self,
        account_id: str,
        api_token: str,
        base_url: str = "https://api.cloudflare.com/client/v4",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.account_id = account_id
        self.api_token = api_token
        self.base_url = base_url.rstrip("/")
        self._transport = transport

    def url_for(self, model: str) -> str:
        return f"{self.base_url}/accounts/{self.account_id}/ai/run/{model}"

    async def run(self, model: str, input: Any, options: Optional[Dict[str, Any]] = None) -> Any:
        if options:
            # Binding-only options (gateway, extra headers) have no REST equivalent.
            log.debug("[WORKERS_AI] ignoring options %s for %s", sorted(options), model)

        headers = {"Authorization": f"Bearer {self.api_token}"}
        async with httpx.AsyncClient(transport=self._transport, timeout=None) as client:
            resp = await client.post(self.url_for(model), headers=headers, json=input or {})

        content_type = resp.headers.get("content-type", "")
        if "json" in content_type:
            return resp.json()

        resp.raise_for_status()
        return resp.content


def get_model_service(settings) -> ModelService:
    """
    Returns a singleton `WorkersAIService` built from settings.

    Deadlines are enforced by the invoker, so the client itself has none.
    """
    global _service

    if _service is None:
        if not settings.cf_account_id or not settings.cf_api_token:
            log.warning("[WORKERS_AI] CF_ACCOUNT_ID / CF_API_TOKEN not set; model calls will fail")
        _service = WorkersAIService(
            account_id=settings.cf_account_id,
            api_token=settings.cf_api_token,
            base_url=settings.ai_base_url,
        )

    return _service
