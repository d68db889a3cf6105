"""Model transport — OpenAI-compatible streaming chat client.

Uses raw ``httpx`` (no ``openai`` SDK dependency) to call the
``/chat/completions`` endpoint with ``stream: true`` and a tool catalogue.
The same client serves OpenAI, OpenRouter, Groq and any self-hosted endpoint
that speaks the protocol.

Streaming protocol (server-sent events):
  - each event is a ``data: {json}`` line; the stream ends with ``data: [DONE]``
  - ``choices[0].delta.content`` carries assistant text
  - ``choices[0].delta.tool_calls[]`` carries tool-call fragments keyed by
    ``index``: id and name arrive once, ``function.arguments`` arrives in
    pieces to be concatenated

Retries (429, 5xx, transport errors) use exponential backoff and only happen
before the first byte of a response body has been consumed, so text already
forwarded to the user is never produced twice.

Usage::

    model = OpenAIChatModel(api_key="sk-...", model="gpt-4o-mini")
    async for item in model.stream([ChatMessage("user", "hello")], tools):
        ...
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, AsyncIterator

import httpx

from sheetgate.config import LLMConfig
from sheetgate.exceptions import ModelUnavailableError
from sheetgate.llm.client import ChatMessage, ChatModel, NullChatModel, StreamItem, TextDelta, ToolCall
from sheetgate.logging import get_logger

log = get_logger(__name__)

# HTTP status codes worth retrying on.
_RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}
_AUTH_STATUS_CODES = {401, 403}

PROVIDER_BASE_URLS: dict[str, str] = {
    "openai": "https://api.openai.com/v1",
    "openrouter": "https://openrouter.ai/api/v1",
    "groq": "https://api.groq.com/openai/v1",
}


class OpenAIChatModel(ChatModel):
    """Streaming chat client for OpenAI-compatible endpoints.

    Args:
        api_key:      Bearer token.  Required: calls fail fast without one.
        base_url:     API root, e.g. ``https://api.openai.com/v1``.
        model:        Model ID (e.g. ``gpt-4o-mini``).
        timeout:      HTTP timeout in seconds.
        max_retries:  Retry attempts on transient errors (0 = no retry).
        temperature:  Sampling temperature.
        transport:    Optional httpx transport (tests use ``httpx.MockTransport``).
    """

    def __init__(
        self,
        *,
        api_key: str = "",
        base_url: str = PROVIDER_BASE_URLS["openai"],
        model: str = "gpt-4o-mini",
        timeout: float = 60.0,
        max_retries: int = 3,
        temperature: float = 0.2,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._model = model
        self._timeout = timeout
        self._max_retries = max_retries
        self._temperature = temperature
        self._transport = transport
        self._http: httpx.AsyncClient | None = None
        self.name = model

    def _get_http(self) -> httpx.AsyncClient:
        """Lazily create the async HTTP client."""
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(
                timeout=self._timeout,
                headers=self._build_headers(),
                transport=self._transport,
            )
        return self._http

    def _build_headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
            "Authorization": f"Bearer {self._api_key}",
        }

    def _build_request_body(
        self, messages: list[ChatMessage], tools: list[dict[str, Any]] | None
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": self._model,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
            "temperature": self._temperature,
            "stream": True,
        }
        if tools:
            body["tools"] = tools
            body["tool_choice"] = "auto"
        return body

    async def stream(
        self,
        messages: list[ChatMessage],
        tools: list[dict[str, Any]] | None = None,
    ) -> AsyncIterator[StreamItem]:
        if not self._api_key:
            raise ModelUnavailableError("API key not configured")

        url = f"{self._base_url}/chat/completions"
        body = self._build_request_body(messages, tools)
        http = self._get_http()

        for attempt in range(self._max_retries + 1):
            retry_reason: str | None = None
            started = False
            try:
                async with http.stream("POST", url, json=body) as resp:
                    status = resp.status_code
                    if status in _AUTH_STATUS_CODES:
                        await resp.aread()
                        raise ModelUnavailableError(f"authentication failed (HTTP {status})", status)
                    if status in _RETRYABLE_STATUS_CODES and attempt < self._max_retries:
                        retry_reason = f"HTTP {status}"
                    elif status >= 400:
                        await resp.aread()
                        raise ModelUnavailableError(
                            f"HTTP {status}: {_error_detail(resp)}", status
                        )
                    else:
                        started = True
                        async for item in self._parse_stream(resp):
                            yield item
                        return
            except httpx.TransportError as exc:
                if started or attempt >= self._max_retries:
                    raise ModelUnavailableError(f"{exc.__class__.__name__}: {exc}") from exc
                retry_reason = str(exc) or exc.__class__.__name__

            delay = _backoff_delay(attempt)
            log.warning("llm_retry", reason=retry_reason, attempt=attempt + 1, delay=delay)
            await asyncio.sleep(delay)

        raise ModelUnavailableError("retries exhausted")  # pragma: no cover

    async def _parse_stream(self, resp: httpx.Response) -> AsyncIterator[StreamItem]:
        pending: dict[int, dict[str, Any]] = {}
        async for raw_line in resp.aiter_lines():
            line = raw_line.strip()
            if not line.startswith("data:"):
                continue
            data = line[len("data:"):].strip()
            if data == "[DONE]":
                break
            try:
                chunk = json.loads(data)
            except json.JSONDecodeError:
                log.warning("llm_stream_bad_chunk", chunk=data[:200])
                continue
            if chunk.get("error"):
                error = chunk["error"]
                message = error.get("message") if isinstance(error, dict) else str(error)
                raise ModelUnavailableError(message or "stream error")

            choices = chunk.get("choices") or []
            if not choices:
                continue
            delta = choices[0].get("delta") or {}
            content = delta.get("content")
            if content:
                yield TextDelta(content)
            for fragment in delta.get("tool_calls") or []:
                index = fragment.get("index", len(pending))
                slot = pending.setdefault(index, {"id": "", "name": "", "arguments": []})
                if fragment.get("id") and not slot["id"]:
                    slot["id"] = fragment["id"]
                function = fragment.get("function") or {}
                if function.get("name") and not slot["name"]:
                    slot["name"] = function["name"]
                if function.get("arguments"):
                    slot["arguments"].append(function["arguments"])

        for index in sorted(pending):
            slot = pending[index]
            if not slot["name"]:
                log.warning("llm_tool_call_without_name", index=index)
                continue
            yield ToolCall(
                id=slot["id"] or f"call_{index}",
                name=slot["name"],
                arguments="".join(slot["arguments"]),
            )

    async def close(self) -> None:
        if self._http is not None and not self._http.is_closed:
            await self._http.aclose()
            self._http = None


def _backoff_delay(attempt: int) -> float:
    """Exponential backoff: 1s, 2s, 4s, ..."""
    return min(2**attempt, 30.0)


def _error_detail(resp: httpx.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return resp.text[:200]
    error = data.get("error") if isinstance(data, dict) else None
    if isinstance(error, dict):
        return str(error.get("message", error))
    return str(error or data)[:200]


def build_chat_model(config: LLMConfig, *, transport: httpx.AsyncBaseTransport | None = None) -> ChatModel:
    """Create the chat model for the configured provider."""
    if config.provider == "null":
        return NullChatModel()
    base_url = config.base_url or PROVIDER_BASE_URLS.get(config.provider)
    if not base_url:
        log.warning("llm_provider_unconfigured", provider=config.provider)
        return NullChatModel()
    return OpenAIChatModel(
        api_key=config.api_key or "",
        base_url=base_url,
        model=config.model,
        timeout=config.timeout,
        max_retries=config.max_retries,
        temperature=config.temperature,
        transport=transport,
    )
