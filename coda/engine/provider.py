"""Model provider client -- Anthropic Messages API over httpx.

The engine depends only on the ModelProvider protocol.  AnthropicProvider
is the production implementation: it owns the httpx client, builds request
payloads and maps HTTP failures to ProviderError.  It never retries; the
turn engine applies the retry policy around whole calls.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from typing import Any, Protocol

import httpx

from coda.config import Settings
from coda.engine.errors import MalformedResponseError, ProviderError
from coda.engine.models import (
    GenerationConfig,
    ProviderResponse,
    TokenUsage,
    block_from_api,
)
from coda.engine.retry import retryable_status

logger = logging.getLogger(__name__)

# Anthropic API version header
_API_VERSION = "2023-06-01"


class ModelProvider(Protocol):
    """What the engine needs from a model provider."""

    async def generate(
        self, messages: list[dict[str, Any]], config: GenerationConfig
    ) -> ProviderResponse: ...

    def generate_stream(
        self, messages: list[dict[str, Any]], config: GenerationConfig
    ) -> AsyncIterator[dict[str, Any]]: ...


def _parse_retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("retry-after")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _error_from_response(status_code: int, body: bytes, retry_after: float | None) -> ProviderError:
    """Turn a non-200 response into a ProviderError."""
    try:
        error_data = json.loads(body)
        error_type = error_data.get("error", {}).get("type", "unknown")
        error_msg = error_data.get("error", {}).get("message", "unknown error")
    except (ValueError, AttributeError):
        error_type = "http_error"
        error_msg = body.decode("utf-8", errors="replace")[:500]
    return ProviderError(
        f"Anthropic API error ({status_code}): {error_type} - {error_msg}",
        status_code=status_code,
        retryable=retryable_status(status_code),
        retry_after=retry_after,
    )


class AnthropicProvider:
    """Direct httpx client for the Anthropic Messages API."""

    def __init__(
        self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None
    ) -> None:
        self._settings = settings
        self._transport = transport
        self._http: httpx.AsyncClient | None = None

    async def start(self) -> None:
        """Initialize the httpx client with auth and timeout settings."""
        settings = self._settings

        headers: dict[str, str] = {
            "anthropic-version": _API_VERSION,
            "content-type": "application/json",
        }

        # OAT tokens (sk-ant-oat*) need Bearer auth plus the oauth beta header;
        # regular API keys use x-api-key.
        api_key = settings.anthropic_api_key or ""
        auth_token = settings.anthropic_auth_token or ""
        if auth_token:
            headers["authorization"] = f"Bearer {auth_token}"
            if "sk-ant-oat" in auth_token:
                headers["anthropic-beta"] = "oauth-2025-04-20"
        elif api_key:
            if "sk-ant-oat" in api_key:
                headers["authorization"] = f"Bearer {api_key}"
                headers["anthropic-beta"] = "oauth-2025-04-20"
            else:
                headers["x-api-key"] = api_key
        else:
            logger.warning(
                "Neither ANTHROPIC_API_KEY nor ANTHROPIC_AUTH_TOKEN is set -- "
                "API calls will fail"
            )

        timeout = httpx.Timeout(
            connect=settings.api_timeout_connect,
            read=settings.api_timeout_read,
            write=10.0,
            pool=10.0,
        )
        limits = httpx.Limits(max_connections=10, max_keepalive_connections=5)

        self._http = httpx.AsyncClient(
            base_url=settings.api_base_url,
            headers=headers,
            timeout=timeout,
            limits=limits,
            transport=self._transport,
        )
        auth_type = "Bearer token" if (auth_token or "sk-ant-oat" in api_key) else "API key"
        logger.info("Anthropic provider initialized (auth: %s)", auth_type)

    async def close(self) -> None:
        if self._http:
            await self._http.aclose()
            self._http = None

    def _client(self) -> httpx.AsyncClient:
        if not self._http:
            raise RuntimeError("httpx client not initialized -- call start() first")
        return self._http

    @staticmethod
    def build_payload(
        messages: list[dict[str, Any]],
        config: GenerationConfig,
        stream: bool = False,
    ) -> dict[str, Any]:
        """Build a Messages API request body. Shared by both call paths."""
        payload: dict[str, Any] = {
            "model": config.model,
            "max_tokens": config.max_tokens,
            "temperature": config.temperature,
            "messages": messages,
        }
        if config.system_prompt:
            payload["system"] = [
                {
                    "type": "text",
                    "text": config.system_prompt,
                    "cache_control": {"type": "ephemeral"},
                }
            ]
        if config.tools:
            payload["tools"] = list(config.tools)
        if stream:
            payload["stream"] = True
        return payload

    async def generate(
        self, messages: list[dict[str, Any]], config: GenerationConfig
    ) -> ProviderResponse:
        """One non-streaming call. Raises ProviderError on failure."""
        payload = self.build_payload(messages, config)
        try:
            response = await self._client().post("/v1/messages", json=payload)
        except httpx.TimeoutException as e:
            raise ProviderError(f"API request timed out: {e}", retryable=True) from e
        except httpx.TransportError as e:
            raise ProviderError(f"Connection error: {e}", retryable=True) from e

        if response.status_code != 200:
            raise _error_from_response(
                response.status_code, response.content, _parse_retry_after(response)
            )

        try:
            data = response.json()
            return ProviderResponse(
                content=[block_from_api(b) for b in data["content"]],
                stop_reason=data.get("stop_reason") or "end_turn",
                usage=TokenUsage.from_api(data.get("usage")),
            )
        except (ValueError, KeyError) as e:
            raise MalformedResponseError(f"Unreadable API response: {e}") from e

    async def generate_stream(
        self, messages: list[dict[str, Any]], config: GenerationConfig
    ) -> AsyncIterator[dict[str, Any]]:
        """Streaming call. Yields raw SSE event dicts in arrival order.

        Only `data:` lines carry payloads; `event:` lines are redundant
        with the payload's own type field and are skipped.
        """
        payload = self.build_payload(messages, config, stream=True)
        try:
            async with self._client().stream("POST", "/v1/messages", json=payload) as response:
                if response.status_code != 200:
                    body = await response.aread()
                    raise _error_from_response(
                        response.status_code, body, _parse_retry_after(response)
                    )
                async for line in response.aiter_lines():
                    if not line.startswith("data: "):
                        continue
                    try:
                        yield json.loads(line[6:])
                    except json.JSONDecodeError as e:
                        raise MalformedResponseError(f"Invalid SSE payload: {e}") from e
        except httpx.TimeoutException as e:
            raise ProviderError(f"Stream timed out: {e}", retryable=True) from e
        except httpx.TransportError as e:
            raise ProviderError(f"Stream connection error: {e}", retryable=True) from e
