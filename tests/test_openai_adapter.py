"""
Tests for the OpenAI completion adapter and its retry policy
"""

import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from aqichat_api.services.ai.openai_adapter import CompletionResult, OpenAIAdapter, ToolCall


OK_BODY = {"choices": [{"message": {"role": "assistant", "content": " Hello "}}]}
RATE_BODY = {"error": {"message": "Rate limit reached for gpt-4o-mini"}}


def scripted(*responses):
    """MockTransport handler replaying responses in order, recording requests"""
    queue = list(responses)
    requests = []

    def handler(request):
        requests.append(request)
        return queue.pop(0)

    return handler, requests


def make_adapter(handler, **kwargs) -> OpenAIAdapter:
    options = {
        "api_key": "sk-test",
        "model": "gpt-4o-mini",
        "url": "https://llm.test/v1/chat/completions",
        "max_attempts": 3,
        "parse_delay": 0.3,
        "backoff_base": 0.7,
        "backoff_jitter": 0.0,
        "sleep": AsyncMock(),
    }
    options.update(kwargs)
    return OpenAIAdapter(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)), **options)


class TestCompletionParsing:
    """Tests for response parsing helpers"""

    def test_tool_call_nested_shape(self):
        """Test standard tool call format"""
        call = ToolCall.from_api({
            "id": "call_1", "type": "function",
            "function": {"name": "getTopCities", "arguments": '{"limit":3}'},
        })

        assert call == ToolCall(id="call_1", name="getTopCities", arguments_json='{"limit":3}')

    def test_tool_call_flat_shape_defaults(self):
        """Test legacy flat format and missing arguments"""
        call = ToolCall.from_api({"id": "call_2", "name": "getCityPM25"})

        assert call.name == "getCityPM25"
        assert call.arguments_json == "{}"

    def test_result_content_and_calls(self):
        """Test accessors on a completion result"""
        result = CompletionResult(ok=True, message={"content": None, "tool_calls": [
            {"id": "a", "function": {"name": "x", "arguments": "{}"}},
        ]})

        assert result.content == ""
        assert [c.id for c in result.tool_calls] == ["a"]


class TestOpenAIAdapter:
    """Tests for OpenAIAdapter.complete"""

    def test_key_validation(self):
        """Test API key shape check"""
        assert OpenAIAdapter(api_key="sk-abc").has_valid_key()
        assert not OpenAIAdapter(api_key="").has_valid_key()
        assert not OpenAIAdapter(api_key="abc").has_valid_key()

    @pytest.mark.asyncio
    async def test_success_first_attempt(self):
        """Test request payload and first-choice message"""
        handler, requests = scripted(httpx.Response(200, json=OK_BODY))
        adapter = make_adapter(handler)
        tools = [{"type": "function", "function": {"name": "getTopCities", "parameters": {}}}]

        result = await adapter.complete([{"role": "user", "content": "hi"}], tools=tools)

        assert result.ok
        assert result.content == "Hello"
        assert result.attempts == 1
        body = json.loads(requests[0].content)
        assert body["tools"] == tools
        assert body["tool_choice"] == "auto"
        assert body["max_tokens"] == 350
        assert requests[0].headers["Authorization"] == "Bearer sk-test"

    @pytest.mark.asyncio
    async def test_no_tools_omits_tool_choice(self):
        """Test finalizing requests carry no tool declarations"""
        handler, requests = scripted(httpx.Response(200, json=OK_BODY))

        await make_adapter(handler).complete([{"role": "user", "content": "hi"}])

        body = json.loads(requests[0].content)
        assert "tools" not in body
        assert "tool_choice" not in body

    @pytest.mark.asyncio
    async def test_rate_limit_then_success(self):
        """Test two rate limits followed by success on the third attempt"""
        handler, requests = scripted(
            httpx.Response(429, json=RATE_BODY),
            httpx.Response(429, json=RATE_BODY),
            httpx.Response(200, json=OK_BODY),
        )
        sleep = AsyncMock()

        result = await make_adapter(handler, sleep=sleep).complete([])

        assert result.ok
        assert result.attempts == 3
        assert len(requests) == 3
        assert [c.args[0] for c in sleep.await_args_list] == [0.7, 1.4]

    @pytest.mark.asyncio
    async def test_rate_limit_exhausted(self):
        """Test three rate limits give up without a fourth attempt"""
        handler, requests = scripted(*[httpx.Response(429, json=RATE_BODY) for _ in range(3)])
        sleep = AsyncMock()

        result = await make_adapter(handler, sleep=sleep).complete([])

        assert not result.ok
        assert len(requests) == 3
        assert sleep.await_count == 2
        assert "Rate limit" in result.error

    @pytest.mark.asyncio
    async def test_rate_limit_detected_from_message(self):
        """Test rate limit signalled only in the error message"""
        handler, requests = scripted(
            httpx.Response(400, json={"error": {"message": "You hit a RATE LIMIT"}}),
            httpx.Response(200, json=OK_BODY),
        )

        result = await make_adapter(handler).complete([])

        assert result.ok
        assert len(requests) == 2

    def test_backoff_includes_jitter(self):
        """Test exponential delay with bounded random jitter"""
        adapter = make_adapter(lambda request: None, backoff_jitter=0.2)

        with patch("aqichat_api.services.ai.openai_adapter.random.uniform", return_value=0.15) as uniform:
            assert adapter.backoff_delay(1) == pytest.approx(0.85)
            assert adapter.backoff_delay(3) == pytest.approx(2.95)

        uniform.assert_called_with(0, 0.2)

    @pytest.mark.asyncio
    async def test_parse_error_retries_with_linear_delay(self):
        """Test unparseable bodies retry after delay * attempt"""
        handler, requests = scripted(
            httpx.Response(200, text="not json"),
            httpx.Response(502, text="<html>bad gateway</html>"),
            httpx.Response(200, json=OK_BODY),
        )
        sleep = AsyncMock()

        result = await make_adapter(handler, sleep=sleep).complete([])

        assert result.ok
        assert [c.args[0] for c in sleep.await_args_list] == pytest.approx([0.3, 0.6])

    @pytest.mark.asyncio
    async def test_parse_error_exhausted(self):
        """Test parse failures on every attempt"""
        handler, requests = scripted(*[httpx.Response(200, text="") for _ in range(3)])

        result = await make_adapter(handler).complete([])

        assert not result.ok
        assert result.error == "OpenAI response parse error."
        assert len(requests) == 3

    @pytest.mark.asyncio
    async def test_other_error_not_retried(self):
        """Test non-rate-limit errors fail immediately"""
        handler, requests = scripted(
            httpx.Response(401, json={"error": {"message": "Incorrect API key provided"}}),
        )
        sleep = AsyncMock()

        result = await make_adapter(handler, sleep=sleep).complete([])

        assert not result.ok
        assert result.error == "OpenAI error: Incorrect API key provided"
        assert len(requests) == 1
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_timeout_is_failure(self):
        """Test a hung upstream call ends the request"""
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        result = await make_adapter(handler).complete([])

        assert not result.ok
        assert "timeout" in result.error


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
