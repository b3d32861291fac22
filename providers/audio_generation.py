"""
Audio generation provider — starts song synthesis jobs and parses callbacks.

Request:   POST {base_url}/generate   (Bearer auth)
           {model, customMode, instrumental, title, style, prompt, callbackUrl}
Response:  {"code": 200, "data": {"taskId": "..."}}

Completion arrives later as an inbound callback carrying the same task id.
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

import httpx
from pydantic import BaseModel
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from config.settings import AudioProviderConfig, get_settings
from core.errors import InvalidPayload, ProviderError

logger = structlog.get_logger()


class GenerationCallback(BaseModel):
    task_id: str
    audio_url: str = ""        # empty when the callback is an intermediate progress event


def parse_generation_callback(raw: Any) -> GenerationCallback:
    """
    Pull the task id and the first rendered audio URL out of a provider callback.
    The task id may sit at taskId, data.taskId or data.task_id.
    """
    if not isinstance(raw, dict):
        raise InvalidPayload("Generation callback body must be an object")
    data = raw.get("data") if isinstance(raw.get("data"), dict) else {}

    task_id = raw.get("taskId") or data.get("taskId") or data.get("task_id")
    if not task_id:
        raise InvalidPayload("Generation callback carries no task id")

    audio_url = ""
    items = data.get("data")
    if isinstance(items, list):
        for item in items:
            if isinstance(item, dict) and (item.get("audio_url") or item.get("source_audio_url")):
                audio_url = item.get("audio_url") or item.get("source_audio_url")
                break

    return GenerationCallback(task_id=str(task_id), audio_url=audio_url or "")


class AudioGenerationClient:
    """httpx client for the song synthesis API."""

    def __init__(self, config: Optional[AudioProviderConfig] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config or get_settings().audio_provider
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.config.base_url,
                headers={"Authorization": f"Bearer {self.config.api_key}"},
                timeout=httpx.Timeout(self.config.timeout, connect=10.0),
                transport=self._transport,
            )
        return self._client

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, max=10),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _request(self, method: str, path: str, **kwargs) -> dict[str, Any]:
        client = await self._get_client()
        resp = await client.request(method, path, **kwargs)
        if resp.status_code >= 400:
            logger.error("audio_provider_api_error", status=resp.status_code, body=resp.text[:500], path=path)
            resp.raise_for_status()
        return resp.json()

    async def start(self, title: str, style: str, lyrics: str) -> str:
        """Kick off a generation job and return the provider's task id."""
        body = {
            "model": self.config.model,
            "customMode": True,
            "instrumental": False,
            "title": title,
            "style": style,
            "prompt": lyrics,
            "callbackUrl": self.config.callback_url,
        }
        try:
            data = await self._request("POST", "/generate", json=body)
        except (httpx.HTTPError, ValueError) as e:
            raise ProviderError(f"Audio generation request failed: {e}", service="audio_generation") from e

        if not isinstance(data, dict):
            raise ProviderError(f"Unexpected response: {data}", service="audio_generation")
        task_id = (data.get("data") or {}).get("taskId")
        if data.get("code") != 200 or not task_id:
            raise ProviderError(f"No taskId received: {data}", service="audio_generation")

        logger.info("audio_generation_started", task_id=task_id, title=title)
        return str(task_id)

    async def close(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None
