"""LLM client — HTTP connection to a chat-completion backend.

Services inject an LLM matching the protocol:

    async def __call__(self, stage, system, messages) -> str: ...
    def stream(self, stage, system, messages) -> AsyncIterator[StreamChunk]: ...

`stage` identifies the caller (e.g. "narrator", "event_chain"). The
implementation may use it for logging or routing; the simplest ignores it.
`messages` is a list of {"role": "user"|"assistant", "content": str}.

Two implementations are provided:

    HttpLLM   — real HTTP client, supports OpenAI-compatible and Anthropic
                 message backends. Selected by provider_format.
    EchoLLM   — answers with the last user message wrapped in a NARRATION
                 tag. Useful for smoke-testing the wiring without a model.

Narrative and event calls are not retried; failures surface as LLMError.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from typing import Any, Literal, Protocol

import httpx
from pydantic import BaseModel

from .errors import UpstreamError

logger = logging.getLogger(__name__)

Messages = list[dict[str, str]]


class StreamChunk(BaseModel):
    """One streamed delta. Usage-only chunks carry empty text."""

    text: str = ""
    usage: dict[str, Any] | None = None


# ---------------------------------------------------------------------------
# Protocol: every LLM implementation must match this signature
# ---------------------------------------------------------------------------

class LLM(Protocol):
    async def __call__(self, stage: str, system: str, messages: Messages) -> str: ...

    def stream(self, stage: str, system: str, messages: Messages) -> AsyncIterator[StreamChunk]: ...


# ---------------------------------------------------------------------------
# HttpLLM: connects to a real backend
# ---------------------------------------------------------------------------

ProviderFormat = Literal["openai", "anthropic"]

ANTHROPIC_VERSION = "2023-06-01"


class HttpLLM:
    """Async HTTP client for chat backends.

    Supported formats:
      "openai"     — POST /v1/chat/completions  {"model", "messages", "stream"}
                     Response: {"choices": [{"message": {"content": "..."}}]}
                     Stream:   data: {"choices": [{"delta": {"content": "..."}}]}
      "anthropic"  — POST /v1/messages  {"model", "system", "messages", "max_tokens"}
                     Response: {"content": [{"type": "text", "text": "..."}]}
                     Stream:   data: {"type": "content_block_delta", "delta": {"text": "..."}}

    Args:
        provider_url:    Base URL of the backend, e.g. "http://localhost:8080".
        api_key:         API key, or empty string if not required.
        provider_format: Wire format to use. Defaults to "openai".
        model:           Model identifier.
        timeout:         HTTP timeout in seconds. Defaults to 120.
        max_tokens:      Maximum completion tokens per call.
        transport:       Optional httpx transport (tests use MockTransport).
    """

    def __init__(
        self,
        provider_url: str,
        api_key: str = "",
        provider_format: ProviderFormat = "openai",
        model: str = "",
        timeout: float = 120.0,
        max_tokens: int = 4096,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = provider_url.rstrip("/")
        self._api_key = api_key
        self._format = provider_format
        self._model = model
        self._timeout = timeout
        self._max_tokens = max_tokens
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if self._format == "anthropic":
            headers["anthropic-version"] = ANTHROPIC_VERSION
            if self._api_key:
                headers["x-api-key"] = self._api_key
        elif self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _build_request(self, system: str, messages: Messages, stream: bool) -> tuple[str, dict]:
        """Return (url, body) for the configured format."""
        if self._format == "anthropic":
            url = f"{self._base_url}/v1/messages"
            body: dict = {
                "model": self._model,
                "max_tokens": self._max_tokens,
                "system": system,
                "messages": messages,
            }
            if stream:
                body["stream"] = True
            return url, body

        # openai (default)
        url = f"{self._base_url}/v1/chat/completions"
        body = {"messages": [{"role": "system", "content": system}, *messages]}
        if self._model:
            body["model"] = self._model
        if self._max_tokens:
            body["max_tokens"] = self._max_tokens
        if stream:
            body["stream"] = True
            body["stream_options"] = {"include_usage": True}
        return url, body

    def _parse_response(self, data: dict) -> str:
        """Extract the completion text from a non-streamed response body."""
        if self._format == "anthropic":
            blocks = data.get("content")
            if not blocks or "text" not in blocks[0]:
                raise LLMError("Unexpected response format from Anthropic-compatible backend")
            return "".join(b.get("text", "") for b in blocks)

        choices = data.get("choices")
        if not choices or "content" not in (choices[0].get("message") or {}):
            raise LLMError("Unexpected response format from OpenAI-compatible backend")
        return choices[0]["message"]["content"] or ""

    def _parse_stream_event(self, data: dict) -> StreamChunk | None:
        if self._format == "anthropic":
            kind = data.get("type")
            if kind == "content_block_delta":
                return StreamChunk(text=data.get("delta", {}).get("text", ""))
            if kind == "message_delta" and data.get("usage"):
                return StreamChunk(usage=data["usage"])
            if kind == "error":
                raise LLMError(f"LLM backend stream error: {data.get('error')}")
            return None

        chunk = StreamChunk(usage=data.get("usage"))
        choices = data.get("choices") or []
        if choices:
            chunk.text = (choices[0].get("delta") or {}).get("content") or ""
        if not chunk.text and not chunk.usage:
            return None
        return chunk

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    def _wrap_error(self, e: httpx.HTTPError) -> LLMError:
        if isinstance(e, httpx.ConnectError):
            return LLMError(f"Cannot connect to LLM backend at {self._base_url}")
        if isinstance(e, httpx.HTTPStatusError):
            return LLMError(f"LLM backend returned HTTP {e.response.status_code}")
        if isinstance(e, httpx.TimeoutException):
            return LLMError(f"LLM backend timed out after {self._timeout}s")
        return LLMError(f"LLM request failed: {e}")

    async def __call__(self, stage: str, system: str, messages: Messages) -> str:
        url, body = self._build_request(system, messages, stream=False)
        logger.debug("llm call stage=%s url=%s messages=%d", stage, url, len(messages))

        try:
            async with self._client() as client:
                resp = await client.post(url, json=body, headers=self._headers())
                resp.raise_for_status()
                text = self._parse_response(resp.json())
        except httpx.HTTPError as e:
            raise self._wrap_error(e) from e
        except (ValueError, KeyError, TypeError, IndexError, AttributeError) as e:
            raise LLMError(f"Unreadable response from LLM backend: {e}") from e

        logger.debug("llm response stage=%s len=%d", stage, len(text))
        return text

    async def stream(self, stage: str, system: str, messages: Messages) -> AsyncIterator[StreamChunk]:
        url, body = self._build_request(system, messages, stream=True)
        logger.debug("llm stream stage=%s url=%s messages=%d", stage, url, len(messages))

        try:
            async with self._client() as client:
                async with client.stream("POST", url, json=body, headers=self._headers()) as resp:
                    resp.raise_for_status()
                    async for line in resp.aiter_lines():
                        if not line.startswith("data:"):
                            continue
                        payload = line[len("data:"):].strip()
                        if payload == "[DONE]":
                            break
                        try:
                            data = json.loads(payload)
                        except json.JSONDecodeError:
                            logger.warning("Skipping malformed stream line: %r", payload[:200])
                            continue
                        chunk = self._parse_stream_event(data)
                        if chunk is not None:
                            yield chunk
        except httpx.HTTPError as e:
            raise self._wrap_error(e) from e


# ---------------------------------------------------------------------------
# EchoLLM: echoes the player's action; useful for wiring smoke tests
# ---------------------------------------------------------------------------

class EchoLLM:
    """Answers with the last user message as a NARRATION step. No network calls.

    Lets you verify that the service wiring (history, parsing, streaming,
    storage writes) works end-to-end without a running model. Structured
    stages get the same text back, which is not valid JSON. Use a scripted
    stub in tests when you need controlled responses.
    """

    def _answer(self, messages: Messages) -> str:
        last = next((m["content"] for m in reversed(messages) if m["role"] == "user"), "")
        return f"[NARRATION: {last}]"

    async def __call__(self, stage: str, system: str, messages: Messages) -> str:
        logger.debug("EchoLLM stage=%s messages=%d", stage, len(messages))
        return self._answer(messages)

    async def stream(self, stage: str, system: str, messages: Messages) -> AsyncIterator[StreamChunk]:
        logger.debug("EchoLLM stream stage=%s messages=%d", stage, len(messages))
        for word in self._answer(messages).split(" "):
            yield StreamChunk(text=word + " ")


# ---------------------------------------------------------------------------
# LLMError: raised by HttpLLM for all connection and protocol failures
# ---------------------------------------------------------------------------

class LLMError(UpstreamError):
    """Raised when the LLM backend cannot be reached or returns an error."""
