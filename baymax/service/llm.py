from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

import httpx

from baymax.logging import get_logger, sanitize_error_message
from baymax.service.errors import UpstreamError
from baymax.storage.models import ChatMessage, dump_history

logger = get_logger(__name__)

NO_REPLY = "Model returned no reply"


@dataclass
class ModelReply:
    raw: str
    refined: str
    choices: Optional[List[Any]]
    latency_ms: int


def extract_reply(data: Any) -> str:
    """Pull the reply text out of an OpenAI-style completion body.

    Tries ``choices[0].message.content``, then ``choices[0].text``, then a
    top-level ``reply`` string.
    """
    if not isinstance(data, dict):
        return NO_REPLY
    choices = data.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        first = choices[0]
        message = first.get("message")
        if isinstance(message, dict) and isinstance(message.get("content"), str):
            return message["content"]
        if isinstance(first.get("text"), str):
            return first["text"]
    reply = data.get("reply")
    if isinstance(reply, str):
        return reply
    return NO_REPLY


class ModelClient:
    """Single-shot caller for the OpenAI-compatible chat-completion endpoint."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        url: str,
        api_key: Optional[str],
        model: str,
        temperature: float = 0.7,
        timeout: float = 30.0,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self.client = client
        self.url = url
        self.api_key = api_key
        self.model = model
        self.temperature = temperature
        self.timeout = timeout
        self._clock = clock

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def complete(self, messages: List[ChatMessage]) -> ModelReply:
        payload = {
            "model": self.model,
            "messages": dump_history(messages),
            "temperature": self.temperature,
        }
        started = self._clock()
        try:
            response = await self.client.post(
                self.url, json=payload, headers=self._headers(), timeout=self.timeout
            )
        except httpx.TimeoutException as exc:
            logger.error("model_call_timeout", model=self.model, timeout=self.timeout)
            raise UpstreamError("Upstream model error", detail="Upstream model timed out") from exc
        except httpx.HTTPError as exc:
            logger.error("model_call_failed", model=self.model, error_type=type(exc).__name__)
            raise UpstreamError(
                "Upstream model error", detail=sanitize_error_message(str(exc))
            ) from exc
        latency_ms = int((self._clock() - started) * 1000)

        if not response.is_success:
            detail = sanitize_error_message(response.text)
            logger.error(
                "model_call_rejected",
                model=self.model,
                upstream_status=response.status_code,
                latency_ms=latency_ms,
            )
            raise UpstreamError(
                "Upstream model error",
                upstream_status=response.status_code,
                detail=detail,
            )

        try:
            data = response.json()
        except ValueError:
            logger.warning("model_reply_not_json", model=self.model)
            data = None
        raw = extract_reply(data)
        choices = data.get("choices") if isinstance(data, dict) else None
        logger.info("model_call_completed", model=self.model, latency_ms=latency_ms)
        return ModelReply(
            raw=raw,
            refined=raw.strip(),
            choices=choices if isinstance(choices, list) else None,
            latency_ms=latency_ms,
        )
