"""
Gemini REST transport.

Streams ``:streamGenerateContent`` server-sent events, or makes a single
``:generateContent`` call when streaming is disabled. HTTP failures surface as
``GeminiAPIError`` carrying the status code, connection failures as the
underlying ``httpx.TransportError``; classification happens in the client.
"""

import json
from collections.abc import AsyncIterator
from typing import Any

import httpx

from ..config.settings import GeminiConfig
from ..core.errors import ConfigurationError
from ..observability.logging import get_logger

logger = get_logger(__name__)


class GeminiAPIError(Exception):
    """Non-success response from the Gemini API."""

    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.message = message


def extract_text(payload: dict[str, Any]) -> str:
    """Concatenate the text parts of the first candidate."""
    candidates = payload.get("candidates") or []
    if not candidates:
        block_reason = (payload.get("promptFeedback") or {}).get("blockReason")
        if block_reason:
            raise GeminiAPIError(200, f"Prompt blocked: {block_reason}")
        return ""
    parts = (candidates[0].get("content") or {}).get("parts") or []
    return "".join(part.get("text", "") for part in parts)


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(body, list) and body:
        body = body[0]
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict) and error.get("message"):
        return error["message"]
    return response.reason_phrase


class GeminiTransport:
    """``Transport`` implementation for the Gemini generative language API."""

    def __init__(self, config: GeminiConfig, http_client: httpx.AsyncClient | None = None):
        self.config = config
        self._http_client = http_client
        self._owned_client = http_client is None

    async def __aenter__(self):
        self._client()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    async def aclose(self) -> None:
        if self._owned_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    def check_credentials(self) -> None:
        if not self.config.has_credentials():
            raise ConfigurationError(
                "Gemini API key not found. Set CF_GEMINI__API_KEY or configure an API key."
            )

    async def send_prompt(self, prompt: str) -> AsyncIterator[str]:
        client = self._client()
        if self.config.enable_streaming:
            async with client.stream(
                "POST",
                self._url("streamGenerateContent"),
                params={"alt": "sse"},
                json=self._payload(prompt),
                headers=self._headers(),
            ) as response:
                await self._raise_for_status(response)
                async for line in response.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    data = line[len("data:") :].strip()
                    if not data:
                        continue
                    text = extract_text(json.loads(data))
                    if text:
                        yield text
        else:
            response = await client.post(
                self._url("generateContent"), json=self._payload(prompt), headers=self._headers()
            )
            await self._raise_for_status(response)
            yield extract_text(response.json())

    def _client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.config.timeout),
                limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
            )
            self._owned_client = True
        return self._http_client

    def _url(self, method: str) -> str:
        return f"{self.config.base_url}/models/{self.config.model}:{method}"

    def _headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json", "x-goog-api-key": self.config.api_key or ""}

    def _payload(self, prompt: str) -> dict[str, Any]:
        return {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {
                "temperature": self.config.temperature,
                "topP": self.config.top_p,
                "topK": self.config.top_k,
                "maxOutputTokens": self.config.max_output_tokens,
            },
        }

    async def _raise_for_status(self, response: httpx.Response) -> None:
        if response.is_success:
            return
        await response.aread()
        message = _error_message(response)
        logger.debug(
            f"Gemini API returned {response.status_code}: {message}",
            status_code=response.status_code,
        )
        raise GeminiAPIError(response.status_code, message)
