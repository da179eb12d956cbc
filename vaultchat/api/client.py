"""Request client for the Anthropic Messages API.

Sends one chat-completion request at a time over httpx, classifies
non-200 responses into ApiError kinds, and retries overloaded (529)
responses with the configured backoff sequence. Holds no state between
calls beyond the pooled httpx client.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import Any

import httpx

from vaultchat.api.errors import ApiError, ConfigurationError, ErrorKind, classify_status
from vaultchat.api.models import Message, ModelResponse, RetryPolicy, ToolSpec
from vaultchat.config import Settings

logger = logging.getLogger(__name__)

_API_VERSION = "2023-06-01"

# (attempt, delay_seconds) -> None; attempt is 1-based
RetryCallback = Callable[[int, float], None]


def _parse_retry_after(value: str | None) -> float | None:
    if value is None:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def _error_message(response: httpx.Response) -> str:
    """Pull a human-readable message out of an error response."""
    try:
        data = response.json()
    except ValueError:
        data = None
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if error:
            return str(error)
        if data.get("message"):
            return str(data["message"])
    if response.text:
        return response.text[:500]
    return "Unknown error"


class RequestClient:
    """Thin Messages API client with overloaded-only retry."""

    def __init__(
        self,
        settings: Settings,
        http: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._settings = settings
        self._http = http
        self._owns_http = http is None
        self._sleep = sleep
        self.retry_policy = RetryPolicy(delays=tuple(settings.retry_delays))

    async def start(self) -> None:
        """Initialize the httpx client with auth and timeout settings."""
        if self._http is not None:
            return
        settings = self._settings
        headers = {
            "anthropic-version": _API_VERSION,
            "content-type": "application/json",
        }
        if settings.anthropic_api_key:
            headers["x-api-key"] = settings.anthropic_api_key
        else:
            logger.warning("ANTHROPIC_API_KEY is not set -- API calls will fail")

        timeout = httpx.Timeout(
            connect=settings.api_timeout_connect,
            read=settings.api_timeout_read,
            write=10.0,
            pool=10.0,
        )
        self._http = httpx.AsyncClient(
            base_url=settings.api_base_url,
            headers=headers,
            timeout=timeout,
            limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
        )
        self._owns_http = True
        logger.info("httpx client initialized (model: %s)", settings.model)

    async def close(self) -> None:
        """Clean up the httpx client if we created it."""
        if self._http is not None and self._owns_http:
            await self._http.aclose()
            self._http = None

    def build_payload(
        self,
        messages: Sequence[Message],
        system_prompt: str | None = None,
        tools: Sequence[ToolSpec] | None = None,
        model: str | None = None,
        max_tokens: int | None = None,
    ) -> dict[str, Any]:
        """Build the Messages API request body for one attempt."""
        payload: dict[str, Any] = {
            "model": model or self._settings.model,
            "max_tokens": max_tokens or self._settings.max_tokens,
            "messages": [m.to_dict() for m in messages],
        }
        if system_prompt and system_prompt.strip():
            if self._settings.enable_prompt_caching:
                payload["system"] = [
                    {
                        "type": "text",
                        "text": system_prompt,
                        "cache_control": {"type": "ephemeral"},
                    }
                ]
            else:
                payload["system"] = system_prompt
        if tools:
            payload["tools"] = [t.to_dict() for t in tools]
        return payload

    async def send(
        self,
        messages: Sequence[Message],
        system_prompt: str | None = None,
        tools: Sequence[ToolSpec] | None = None,
        on_retry: RetryCallback | None = None,
        model: str | None = None,
        max_tokens: int | None = None,
    ) -> ModelResponse:
        """Send one request, retrying overloaded responses.

        Raises ApiError for any terminal non-200 outcome and
        ConfigurationError when no API key is configured.
        """
        if not self._settings.anthropic_api_key:
            raise ConfigurationError("Anthropic API key not configured")
        if self._http is None:
            await self.start()
        assert self._http is not None

        payload = self.build_payload(messages, system_prompt, tools, model, max_tokens)
        policy = self.retry_policy
        retry = 0

        while True:
            attempt = retry + 1
            logger.debug(
                "Messages API request (attempt %d/%d, model=%s, messages=%d)",
                attempt, policy.max_retries + 1, payload["model"], len(payload["messages"]),
            )
            try:
                response = await self._http.post("/v1/messages", json=payload)
            except httpx.HTTPError as e:
                raise ApiError(0, ErrorKind.NETWORK, f"{type(e).__name__}: {e}") from e

            if response.status_code == 200:
                try:
                    return ModelResponse.from_dict(response.json())
                except (ValueError, KeyError) as e:
                    raise ApiError(
                        200, ErrorKind.UNKNOWN, f"Malformed API response: {e}"
                    ) from e

            kind = classify_status(response.status_code)
            message = _error_message(response)

            if kind == ErrorKind.OVERLOADED:
                retry += 1
                delay = policy.delay_for(retry)
                if delay is None:
                    logger.warning(
                        "API overloaded (529), giving up after %d retries", policy.max_retries
                    )
                    raise ApiError(
                        response.status_code, kind, message, retries_exhausted=True
                    )
                logger.warning(
                    "API overloaded (529), retrying in %.1fs (attempt %d/%d)",
                    delay, retry, policy.max_retries,
                )
                if on_retry is not None:
                    try:
                        on_retry(retry, delay)
                    except Exception:
                        logger.exception("Retry observer failed")
                await self._sleep(delay)
                continue

            retry_after = None
            if kind == ErrorKind.RATE_LIMITED:
                retry_after = _parse_retry_after(response.headers.get("retry-after"))
            logger.error("API error %d (%s): %s", response.status_code, kind, message)
            raise ApiError(response.status_code, kind, message, retry_after=retry_after)

    async def complete(
        self,
        prompt: str,
        system_prompt: str | None = None,
        model: str | None = None,
        max_tokens: int | None = None,
    ) -> str:
        """Single-shot, tool-less request. Returns the joined text."""
        response = await self.send(
            [Message(role="user", content=prompt)],
            system_prompt=system_prompt,
            model=model,
            max_tokens=max_tokens,
        )
        return response.text()
