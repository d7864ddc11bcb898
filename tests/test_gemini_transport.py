"""
Tests for the Gemini REST transport against ``httpx.MockTransport``.
"""

import json

import httpx
import pytest

from crewfusion.config.settings import GeminiConfig
from crewfusion.core.client import RetryingApiClient, RetryPolicy
from crewfusion.core.errors import ConfigurationError, QuotaExceeded, Unauthorized
from crewfusion.transport.gemini import GeminiAPIError, GeminiTransport, extract_text


def chunk(text):
    return {"candidates": [{"content": {"parts": [{"text": text}], "role": "model"}}]}


def sse_body(*texts):
    return "".join(f"data: {json.dumps(chunk(text))}\r\n\r\n" for text in texts).encode()


def make_transport(handler, **config):
    settings = GeminiConfig(api_key="test-key", **config)
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return GeminiTransport(settings, http_client=client)


async def collect(stream):
    return [fragment async for fragment in stream]


class TestExtractText:
    def test_joins_parts(self):
        payload = {"candidates": [{"content": {"parts": [{"text": "a"}, {"text": "b"}]}}]}
        assert extract_text(payload) == "ab"

    def test_empty_candidates(self):
        assert extract_text({}) == ""

    def test_blocked_prompt(self):
        with pytest.raises(GeminiAPIError, match="SAFETY"):
            extract_text({"promptFeedback": {"blockReason": "SAFETY"}})


class TestGeminiTransport:
    """Request shape, streaming and error surfacing."""

    @pytest.mark.asyncio
    async def test_streaming_request(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["key"] = request.headers["x-goog-api-key"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                content=sse_body("Title: ", "Recipe Hub"),
                headers={"content-type": "text/event-stream"},
            )

        transport = make_transport(handler)

        fragments = await collect(transport.send_prompt("make an idea"))

        assert fragments == ["Title: ", "Recipe Hub"]
        assert seen["url"].endswith("/models/gemini-2.0-flash-exp:streamGenerateContent?alt=sse")
        assert seen["key"] == "test-key"
        assert seen["body"]["contents"][0]["parts"][0]["text"] == "make an idea"
        assert seen["body"]["generationConfig"] == {
            "temperature": 0.7,
            "topP": 0.8,
            "topK": 40,
            "maxOutputTokens": 8192,
        }

    @pytest.mark.asyncio
    async def test_non_streaming_request(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path.endswith(":generateContent")
            return httpx.Response(200, json=chunk("whole answer"))

        transport = make_transport(handler, enable_streaming=False)

        assert await collect(transport.send_prompt("p")) == ["whole answer"]

    @pytest.mark.asyncio
    async def test_error_status_raises_with_message(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                429, json={"error": {"code": 429, "message": "Resource has been exhausted"}}
            )

        transport = make_transport(handler)

        with pytest.raises(GeminiAPIError) as exc_info:
            await collect(transport.send_prompt("p"))
        assert exc_info.value.status_code == 429
        assert exc_info.value.message == "Resource has been exhausted"

    @pytest.mark.asyncio
    async def test_errors_classified_by_client(self):
        statuses = iter([429, 429, 429])

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(next(statuses), json={"error": {"message": "quota"}})

        delays = []

        async def sleep(seconds):
            delays.append(seconds)

        client = RetryingApiClient(make_transport(handler), RetryPolicy(), sleep=sleep)

        with pytest.raises(QuotaExceeded):
            await collect(client.invoke("p"))
        assert delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_invalid_key_is_unauthorized(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(403, json={"error": {"message": "API key not valid"}})

        client = RetryingApiClient(make_transport(handler))

        with pytest.raises(Unauthorized):
            await collect(client.invoke("p"))
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_connection_errors_propagate_as_transport_errors(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("no route to host", request=request)

        transport = make_transport(handler)

        with pytest.raises(httpx.TransportError):
            await collect(transport.send_prompt("p"))

    @pytest.mark.parametrize("api_key", [None, "", "your_gemini_api_key_here"])
    def test_missing_or_placeholder_key(self, api_key):
        transport = GeminiTransport(GeminiConfig(api_key=api_key))
        with pytest.raises(ConfigurationError, match="API key not found"):
            transport.check_credentials()

    @pytest.mark.asyncio
    async def test_owned_client_closed(self):
        transport = GeminiTransport(GeminiConfig(api_key="k"))
        async with transport:
            assert transport._http_client is not None
        assert transport._http_client is None

    @pytest.mark.asyncio
    async def test_injected_client_left_open(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200)))
        transport = GeminiTransport(GeminiConfig(api_key="k"), http_client=client)
        await transport.aclose()
        assert not client.is_closed
        await client.aclose()
