"""Unit tests — OpenAIChatModel streaming, retries and provider wiring."""

from __future__ import annotations

import json
from typing import Any

import httpx
import pytest

from sheetgate.config import LLMConfig
from sheetgate.exceptions import ModelUnavailableError
from sheetgate.llm.client import ChatMessage, NullChatModel, TextDelta, ToolCall
from sheetgate.llm.openai import OpenAIChatModel, build_chat_model


def _sse(*chunks: dict[str, Any] | str) -> bytes:
    lines = []
    for chunk in chunks:
        data = chunk if isinstance(chunk, str) else json.dumps(chunk)
        lines.append(f"data: {data}\n\n")
    return "".join(lines).encode()


def _delta(**delta: Any) -> dict[str, Any]:
    return {"choices": [{"index": 0, "delta": delta}]}


def _model(handler, **kwargs: Any) -> OpenAIChatModel:
    kwargs.setdefault("api_key", "sk-test")
    return OpenAIChatModel(transport=httpx.MockTransport(handler), **kwargs)


async def _collect(model: OpenAIChatModel, tools: list[dict[str, Any]] | None = None) -> list[Any]:
    return [item async for item in model.stream([ChatMessage("user", "hi")], tools)]


@pytest.fixture(autouse=True)
def _no_backoff(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("sheetgate.llm.openai._backoff_delay", lambda attempt: 0)


@pytest.mark.unit
class TestStreaming:
    @pytest.mark.asyncio
    async def test_text_deltas_in_order(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200, content=_sse(_delta(content="Hel"), _delta(content="lo"), "[DONE]")
            )

        model = _model(handler, base_url="https://example.test/v1/", model="m-1")
        items = await _collect(model)
        await model.close()

        assert items == [TextDelta("Hel"), TextDelta("lo")]
        request = seen[0]
        assert str(request.url) == "https://example.test/v1/chat/completions"
        assert request.headers["Authorization"] == "Bearer sk-test"
        body = json.loads(request.content)
        assert body["model"] == "m-1"
        assert body["stream"] is True
        assert "tools" not in body

    @pytest.mark.asyncio
    async def test_tool_call_fragments_assembled(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200,
                content=_sse(
                    _delta(content="Writing."),
                    _delta(tool_calls=[{"index": 0, "id": "c1", "function": {"name": "write_cell", "arguments": '{"cell"'}}]),
                    _delta(tool_calls=[{"index": 1, "id": "c2", "function": {"name": "list_sheets", "arguments": "{}"}}]),
                    _delta(tool_calls=[{"index": 0, "function": {"arguments": ': "B2", "value": 1}'}}]),
                    "[DONE]",
                ),
            )

        tools = [{"type": "function", "function": {"name": "write_cell"}}]
        items = await _collect(_model(handler), tools)

        assert items == [
            TextDelta("Writing."),
            ToolCall(id="c1", name="write_cell", arguments='{"cell": "B2", "value": 1}'),
            ToolCall(id="c2", name="list_sheets", arguments="{}"),
        ]

    @pytest.mark.asyncio
    async def test_tools_sent_with_auto_choice(self) -> None:
        bodies: list[dict[str, Any]] = []

        def handler(request: httpx.Request) -> httpx.Response:
            bodies.append(json.loads(request.content))
            return httpx.Response(200, content=_sse("[DONE]"))

        await _collect(_model(handler), [{"type": "function", "function": {"name": "x"}}])

        assert bodies[0]["tool_choice"] == "auto"
        assert bodies[0]["tools"][0]["function"]["name"] == "x"

    @pytest.mark.asyncio
    async def test_bad_chunks_skipped(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200, content=b": keep-alive\n\ndata: {not json}\n\n" + _sse(_delta(content="ok"), "[DONE]")
            )

        assert await _collect(_model(handler)) == [TextDelta("ok")]

    @pytest.mark.asyncio
    async def test_error_chunk_raises(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=_sse({"error": {"message": "overloaded"}}))

        with pytest.raises(ModelUnavailableError, match="overloaded"):
            await _collect(_model(handler))


@pytest.mark.unit
class TestFailures:
    @pytest.mark.asyncio
    async def test_missing_key_fails_fast(self) -> None:
        calls: list[httpx.Request] = []
        model = _model(lambda r: calls.append(r) or httpx.Response(200), api_key="")

        with pytest.raises(ModelUnavailableError, match="API key"):
            await _collect(model)
        assert calls == []

    @pytest.mark.asyncio
    async def test_retry_then_success(self) -> None:
        responses = iter([
            httpx.Response(503, json={"error": {"message": "busy"}}),
            httpx.Response(200, content=_sse(_delta(content="fine"), "[DONE]")),
        ])

        items = await _collect(_model(lambda r: next(responses), max_retries=2))

        assert items == [TextDelta("fine")]

    @pytest.mark.asyncio
    async def test_retries_exhausted_reports_status(self) -> None:
        attempts: list[int] = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(1)
            return httpx.Response(429, json={"error": {"message": "slow down"}})

        with pytest.raises(ModelUnavailableError) as exc_info:
            await _collect(_model(handler, max_retries=2))

        assert len(attempts) == 3
        assert exc_info.value.status_code == 429
        assert "slow down" in exc_info.value.reason

    @pytest.mark.asyncio
    async def test_auth_failure_not_retried(self) -> None:
        attempts: list[int] = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(1)
            return httpx.Response(401, json={"error": {"message": "bad key"}})

        with pytest.raises(ModelUnavailableError, match="authentication failed"):
            await _collect(_model(handler, max_retries=3))
        assert len(attempts) == 1

    @pytest.mark.asyncio
    async def test_transport_error_retried(self) -> None:
        attempts: list[int] = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(1)
            if len(attempts) == 1:
                raise httpx.ConnectError("refused")
            return httpx.Response(200, content=_sse(_delta(content="back"), "[DONE]"))

        assert await _collect(_model(handler, max_retries=1)) == [TextDelta("back")]
        assert len(attempts) == 2

    @pytest.mark.asyncio
    async def test_transport_error_without_retries(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused")

        with pytest.raises(ModelUnavailableError, match="ConnectError"):
            await _collect(_model(handler, max_retries=0))


@pytest.mark.unit
class TestBuildChatModel:
    def test_null_provider(self) -> None:
        assert isinstance(build_chat_model(LLMConfig(provider="null")), NullChatModel)

    def test_custom_without_base_url(self) -> None:
        assert isinstance(build_chat_model(LLMConfig(provider="custom")), NullChatModel)

    @pytest.mark.asyncio
    async def test_provider_base_url(self) -> None:
        urls: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            urls.append(str(request.url))
            return httpx.Response(200, content=_sse("[DONE]"))

        model = build_chat_model(
            LLMConfig(provider="groq", api_key="k", model="llama"), transport=httpx.MockTransport(handler)
        )
        assert isinstance(model, OpenAIChatModel)
        assert model.name == "llama"
        await _collect(model)
        assert urls == ["https://api.groq.com/openai/v1/chat/completions"]
