"""Tests for RequestClient: payload shape, classification and retry.

The httpx transport is replaced with httpx.MockTransport and sleep with a
recorder, so retry delays are observed without waiting.
"""

import json

import httpx
import pytest

from vaultchat.api.client import RequestClient
from vaultchat.api.errors import ApiError, ConfigurationError, ErrorKind
from vaultchat.api.models import Message, ToolSpec
from vaultchat.config import Settings

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_OK_BODY = {
    "content": [{"type": "text", "text": "hello"}],
    "stop_reason": "end_turn",
    "usage": {"input_tokens": 3, "output_tokens": 1},
}


def _settings(**overrides) -> Settings:
    values = {"ANTHROPIC_API_KEY": "test-key"}
    values.update(overrides)
    return Settings(**values)


class _Recorder:
    """Scripted transport handler plus sleep recorder."""

    def __init__(self, responses: list[httpx.Response | Exception]) -> None:
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []
        self.sleeps: list[float] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)


def _client(recorder: _Recorder, settings: Settings | None = None) -> RequestClient:
    http = httpx.AsyncClient(
        transport=httpx.MockTransport(recorder.handler),
        base_url="https://api.test",
    )
    return RequestClient(settings or _settings(), http=http, sleep=recorder.sleep)


def _overloaded() -> httpx.Response:
    return httpx.Response(529, json={"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}})


_MESSAGES = [Message(role="user", content="hi")]


# ---------------------------------------------------------------------------
# Retry
# ---------------------------------------------------------------------------


class TestRetry:
    @pytest.mark.asyncio
    async def test_three_overloaded_then_success(self):
        rec = _Recorder([_overloaded(), _overloaded(), _overloaded(), httpx.Response(200, json=_OK_BODY)])
        retries: list[tuple[int, float]] = []
        client = _client(rec)

        response = await client.send(_MESSAGES, on_retry=lambda a, d: retries.append((a, d)))

        assert response.text() == "hello"
        assert len(rec.requests) == 4
        assert rec.sleeps == [1.0, 2.0, 4.0]
        assert retries == [(1, 1.0), (2, 2.0), (3, 4.0)]

    @pytest.mark.asyncio
    async def test_four_overloaded_exhausts(self):
        rec = _Recorder([_overloaded() for _ in range(4)])
        client = _client(rec)

        with pytest.raises(ApiError) as exc_info:
            await client.send(_MESSAGES)

        assert exc_info.value.kind == ErrorKind.OVERLOADED
        assert exc_info.value.retries_exhausted is True
        assert exc_info.value.message == "Overloaded"
        assert len(rec.requests) == 4
        assert rec.sleeps == [1.0, 2.0, 4.0]

    @pytest.mark.asyncio
    async def test_retry_observer_failure_does_not_stop_retry(self):
        rec = _Recorder([_overloaded(), httpx.Response(200, json=_OK_BODY)])
        client = _client(rec)

        def broken(attempt, delay):
            raise RuntimeError("ui gone")

        response = await client.send(_MESSAGES, on_retry=broken)
        assert response.stop_reason == "end_turn"

    @pytest.mark.asyncio
    async def test_custom_delays(self):
        rec = _Recorder([_overloaded(), _overloaded()])
        client = _client(rec, _settings(retry_delays=[0.5]))

        with pytest.raises(ApiError):
            await client.send(_MESSAGES)
        assert rec.sleeps == [0.5]


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


class TestClassification:
    @pytest.mark.asyncio
    async def test_rate_limit_not_retried_and_carries_retry_after(self):
        rec = _Recorder([
            httpx.Response(429, headers={"retry-after": "30"}, json={"error": {"message": "slow down"}}),
        ])
        client = _client(rec)

        with pytest.raises(ApiError) as exc_info:
            await client.send(_MESSAGES)

        err = exc_info.value
        assert err.kind == ErrorKind.RATE_LIMITED
        assert err.retry_after == 30.0
        assert rec.sleeps == []
        assert len(rec.requests) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status,kind",
        [
            (400, ErrorKind.INVALID_REQUEST),
            (401, ErrorKind.UNAUTHENTICATED),
            (500, ErrorKind.SERVER_ERROR),
        ],
    )
    async def test_terminal_statuses(self, status, kind):
        rec = _Recorder([httpx.Response(status, text="nope")])
        client = _client(rec)

        with pytest.raises(ApiError) as exc_info:
            await client.send(_MESSAGES)

        assert exc_info.value.kind == kind
        assert exc_info.value.status == status
        assert exc_info.value.message == "nope"
        assert rec.sleeps == []

    @pytest.mark.asyncio
    async def test_transport_error_is_network(self):
        rec = _Recorder([httpx.ConnectError("refused")])
        client = _client(rec)

        with pytest.raises(ApiError) as exc_info:
            await client.send(_MESSAGES)

        assert exc_info.value.kind == ErrorKind.NETWORK
        assert exc_info.value.status == 0

    @pytest.mark.asyncio
    async def test_missing_key(self):
        rec = _Recorder([])
        client = _client(rec, _settings(ANTHROPIC_API_KEY=""))

        with pytest.raises(ConfigurationError):
            await client.send(_MESSAGES)
        assert rec.requests == []


# ---------------------------------------------------------------------------
# Payload
# ---------------------------------------------------------------------------


class TestPayload:
    @pytest.mark.asyncio
    async def test_request_body(self):
        rec = _Recorder([httpx.Response(200, json=_OK_BODY)])
        client = _client(rec)
        tool = ToolSpec("read_file", "Read a file", {"type": "object", "properties": {}})

        await client.send(_MESSAGES, system_prompt="be nice", tools=[tool])

        body = json.loads(rec.requests[0].content)
        assert rec.requests[0].url.path == "/v1/messages"
        assert body["model"] == "claude-sonnet-4-5-20250929"
        assert body["system"] == "be nice"
        assert body["messages"] == [{"role": "user", "content": "hi"}]
        assert body["tools"][0]["name"] == "read_file"

    def test_prompt_caching_marks_system_block(self):
        client = RequestClient(_settings(enable_prompt_caching=True))
        payload = client.build_payload(_MESSAGES, system_prompt="sys")
        assert payload["system"] == [
            {"type": "text", "text": "sys", "cache_control": {"type": "ephemeral"}}
        ]

    def test_blank_system_and_no_tools_omitted(self):
        client = RequestClient(_settings())
        payload = client.build_payload(_MESSAGES, system_prompt="  ", tools=[])
        assert "system" not in payload
        assert "tools" not in payload

    @pytest.mark.asyncio
    async def test_complete_uses_overrides(self):
        rec = _Recorder([httpx.Response(200, json=_OK_BODY)])
        client = _client(rec)

        text = await client.complete("sum up", model="claude-haiku-4-5-20251001", max_tokens=32)

        body = json.loads(rec.requests[0].content)
        assert text == "hello"
        assert body["model"] == "claude-haiku-4-5-20251001"
        assert body["max_tokens"] == 32
        assert "tools" not in body
