"""Tests for the upstream chat-completion caller."""

import json

import httpx
import pytest

from baymax.service.errors import UpstreamError
from baymax.service.llm import NO_REPLY, ModelClient, extract_reply
from baymax.storage.models import system_message, user_message

MODEL_URL = "http://model.test/openai/v1/chat/completions"


class SteppingClock:
    """Advances 0.25s per reading so latency is deterministic."""

    def __init__(self):
        self.now = 0.0

    def __call__(self):
        value = self.now
        self.now += 0.25
        return value


def _client(handler, **kwargs):
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    model = ModelClient(
        http,
        url=MODEL_URL,
        api_key="gsk_testkey",
        model="llama-3.1-8b-instant",
        temperature=0.7,
        timeout=5.0,
        clock=SteppingClock(),
        **kwargs,
    )
    return http, model


class TestExtractReply:
    def test_message_content_first(self):
        data = {"choices": [{"message": {"content": "from message"}, "text": "from text"}]}
        assert extract_reply(data) == "from message"

    def test_falls_back_to_text(self):
        assert extract_reply({"choices": [{"text": "from text"}], "reply": "r"}) == "from text"

    def test_falls_back_to_reply(self):
        assert extract_reply({"choices": [], "reply": "top level"}) == "top level"
        assert extract_reply({"reply": "top level"}) == "top level"

    def test_non_string_reply_ignored(self):
        assert extract_reply({"reply": {"nested": True}}) == NO_REPLY

    def test_nothing_usable(self):
        assert extract_reply(None) == NO_REPLY
        assert extract_reply({}) == NO_REPLY
        assert extract_reply({"choices": [{"message": {}}]}) == NO_REPLY


class TestModelClient:
    async def test_sends_completion_request(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(
                200, json={"choices": [{"message": {"content": "  Take rest.  "}}]}
            )

        http, model = _client(handler)
        async with http:
            reply = await model.complete([system_message("persona"), user_message("tired")])

        request = seen[0]
        assert request.method == "POST"
        assert str(request.url) == MODEL_URL
        assert request.headers["Authorization"] == "Bearer gsk_testkey"
        assert json.loads(request.content) == {
            "model": "llama-3.1-8b-instant",
            "messages": [
                {"role": "system", "content": "persona"},
                {"role": "user", "content": "tired"},
            ],
            "temperature": 0.7,
        }
        assert reply.raw == "  Take rest.  "
        assert reply.refined == "Take rest."
        assert reply.choices == [{"message": {"content": "  Take rest.  "}}]
        assert reply.latency_ms == 250

    async def test_upstream_error_status(self):
        http, model = _client(
            lambda request: httpx.Response(500, text="boom: api_key=gsk_secretvalue123")
        )
        async with http:
            with pytest.raises(UpstreamError) as exc_info:
                await model.complete([user_message("hi")])

        error = exc_info.value
        assert error.status_code == 502
        assert error.upstream_status == 500
        assert error.message == "Upstream model error"
        assert "gsk_secretvalue123" not in error.detail

    async def test_rate_limited_upstream(self):
        http, model = _client(lambda request: httpx.Response(429, json={"error": "slow down"}))
        async with http:
            with pytest.raises(UpstreamError) as exc_info:
                await model.complete([user_message("hi")])
        assert exc_info.value.upstream_status == 429

    async def test_empty_error_body(self):
        http, model = _client(lambda request: httpx.Response(503))
        async with http:
            with pytest.raises(UpstreamError) as exc_info:
                await model.complete([user_message("hi")])
        assert exc_info.value.detail == "<no-body>"

    async def test_network_failure_has_no_upstream_status(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        http, model = _client(handler)
        async with http:
            with pytest.raises(UpstreamError) as exc_info:
                await model.complete([user_message("hi")])
        assert exc_info.value.status_code == 502
        assert exc_info.value.upstream_status is None

    async def test_timeout_maps_to_upstream_error(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        http, model = _client(handler)
        async with http:
            with pytest.raises(UpstreamError) as exc_info:
                await model.complete([user_message("hi")])
        assert exc_info.value.detail == "Upstream model timed out"

    async def test_non_json_success_body(self):
        http, model = _client(lambda request: httpx.Response(200, text="not json"))
        async with http:
            reply = await model.complete([user_message("hi")])
        assert reply.raw == NO_REPLY
        assert reply.choices is None
