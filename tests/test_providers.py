"""
Tests for upstream provider adapters.

Tests cover:
- OpenAI and Anthropic payload building and SSE parsing over a mocked transport
- Upstream HTTP failures
- Bedrock Converse request building and stream parsing with a fake boto3 client
- Non-streaming generate() and the provider registry
"""

import json

import httpx
import pytest
from botocore.exceptions import ClientError

from errors import ProviderInvocationError
from providers import (
    AnthropicProvider,
    BedrockProvider,
    OpenAIProvider,
    ProviderRegistry,
    build_classifier_complete,
    empty_usage,
)

OPENAI_CREDS = {"api_key": "sk-test"}
BEDROCK_CREDS = {"access_key_id": "AKIA", "secret_access_key": "secret", "region": "us-east-1"}

HELLO_CALL = {
    "messages": [
        {"role": "system", "content": "Be brief.", "developer": False},
        {"role": "user", "content": "hi"},
    ]
}


def _sse(*events, done=True):
    body = "".join(f"data: {json.dumps(e)}\n\n" for e in events)
    if done:
        body += "data: [DONE]\n\n"
    return body.encode("utf-8")


def _named_sse(*events):
    return "".join(f"event: {e['type']}\ndata: {json.dumps(e)}\n\n" for e in events).encode("utf-8")


def _transport(body, status=200, seen=None):
    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        return httpx.Response(status, content=body, headers={"content-type": "text/event-stream"})

    return httpx.MockTransport(handler)


async def _drain(agen):
    return [p async for p in agen]


def _types(parts):
    return [p["type"] for p in parts]


# ============================================================================
# OpenAI
# ============================================================================

class TestOpenAIProvider:
    """Test the Chat Completions adapter."""

    def test_build_payload(self, test_config):
        """Tools, tool choice, structured output and reasoning effort."""
        provider = OpenAIProvider(test_config)
        payload = provider.build_payload(
            "gpt-5",
            {
                "messages": [
                    {"role": "system", "content": "dev", "developer": True},
                    {"role": "user", "content": "hi"},
                ],
                "max_output_tokens": 50,
                "tools": {"f": {"parameters": {"type": "object"}}},
                "tool_choice": {"type": "tool", "tool_name": "f"},
                "output": {"schema": {"type": "object"}, "name": "answer"},
                "provider_options": {"openai": {"reasoning_effort": "low"}},
            },
        )
        assert payload["messages"][0] == {"role": "developer", "content": "dev"}
        assert payload["stream"] is True
        assert payload["stream_options"] == {"include_usage": True}
        assert payload["max_completion_tokens"] == 50
        assert payload["tools"] == [{"type": "function", "function": {"name": "f", "parameters": {"type": "object"}}}]
        assert payload["tool_choice"] == {"type": "function", "function": {"name": "f"}}
        assert payload["response_format"]["json_schema"]["name"] == "answer"
        assert payload["reasoning_effort"] == "low"

    def test_zero_sampling_values_are_sent(self, test_config):
        payload = OpenAIProvider(test_config).build_payload("gpt-4o", {**HELLO_CALL, "temperature": 0.0, "top_p": 0})
        assert payload["temperature"] == 0.0
        assert payload["top_p"] == 0
        assert "presence_penalty" not in payload

    def test_tool_round_trip_messages(self, test_config):
        """Tool calls and results map to assistant tool_calls and tool messages."""
        provider = OpenAIProvider(test_config)
        msgs = provider.convert_messages(
            [
                {
                    "role": "assistant",
                    "content": [{"type": "tool-call", "tool_call_id": "c1", "tool_name": "f", "input": {"a": 1}}],
                },
                {
                    "role": "tool",
                    "content": [
                        {
                            "type": "tool-result",
                            "tool_call_id": "c1",
                            "tool_name": "f",
                            "output": {"type": "text", "value": "ok"},
                        }
                    ],
                },
            ]
        )
        assert msgs == [
            {
                "role": "assistant",
                "content": None,
                "tool_calls": [{"id": "c1", "type": "function", "function": {"name": "f", "arguments": '{"a": 1}'}}],
            },
            {"role": "tool", "tool_call_id": "c1", "content": "ok"},
        ]

    @pytest.mark.asyncio
    async def test_stream_text(self, test_config):
        """Content deltas become one text block, then finish with usage."""
        seen = []
        body = _sse(
            {"choices": [{"delta": {"role": "assistant", "content": "Hel"}}]},
            {"choices": [{"delta": {"content": "lo"}, "finish_reason": "stop"}]},
            {
                "choices": [],
                "usage": {
                    "prompt_tokens": 10,
                    "completion_tokens": 2,
                    "prompt_tokens_details": {"cached_tokens": 4},
                },
            },
        )
        provider = OpenAIProvider(test_config, transport=_transport(body, seen=seen))
        parts = await _drain(provider.stream("gpt-4o", OPENAI_CREDS, HELLO_CALL))

        assert _types(parts) == ["text-start", "text-delta", "text-delta", "text-end", "finish"]
        assert parts[-1]["finish_reason"] == "stop"
        assert parts[-1]["usage"] == {
            "input_tokens": 10,
            "output_tokens": 2,
            "total_tokens": 12,
            "cached_tokens": 4,
            "reasoning_tokens": 0,
        }
        request = seen[0]
        assert request.url.path.endswith("/chat/completions")
        assert request.headers["authorization"] == "Bearer sk-test"
        assert json.loads(request.content)["model"] == "gpt-4o"

    @pytest.mark.asyncio
    async def test_stream_reasoning_then_tool_call(self, test_config):
        """Reasoning closes before the tool block opens."""
        body = _sse(
            {"choices": [{"delta": {"reasoning_content": "hmm"}}]},
            {
                "choices": [
                    {
                        "delta": {
                            "tool_calls": [
                                {"index": 0, "id": "call_1", "function": {"name": "f", "arguments": '{"a"'}}
                            ]
                        }
                    }
                ]
            },
            {"choices": [{"delta": {"tool_calls": [{"index": 0, "function": {"arguments": ":1}"}}]}}]},
            {"choices": [{"delta": {}, "finish_reason": "tool_calls"}]},
        )
        provider = OpenAIProvider(test_config, transport=_transport(body))
        parts = await _drain(provider.stream("gpt-5", OPENAI_CREDS, HELLO_CALL))

        assert _types(parts) == [
            "reasoning-start",
            "reasoning-delta",
            "reasoning-end",
            "tool-input-start",
            "tool-input-delta",
            "tool-input-delta",
            "tool-input-end",
            "finish",
        ]
        assert parts[3]["tool_call_id"] == "call_1"
        assert parts[3]["tool_name"] == "f"
        assert parts[-1]["usage"] == empty_usage()

    @pytest.mark.asyncio
    async def test_stream_error_payload(self, test_config):
        """An error chunk ends the stream with an error part."""
        body = _sse(
            {"choices": [{"delta": {"content": "x"}}]},
            {"error": {"type": "server_error", "message": "overloaded"}},
        )
        provider = OpenAIProvider(test_config, transport=_transport(body))
        parts = await _drain(provider.stream("gpt-4o", OPENAI_CREDS, HELLO_CALL))
        assert _types(parts) == ["text-start", "text-delta", "text-end", "error"]
        assert parts[-1]["error"]["message"] == "overloaded"

    @pytest.mark.asyncio
    async def test_http_error_status(self, test_config):
        """Non-200 upstream raises with the status and body snippet."""
        provider = OpenAIProvider(test_config, transport=_transport(b'{"error": "bad key"}', status=401))
        with pytest.raises(ProviderInvocationError) as exc:
            await _drain(provider.stream("gpt-4o", OPENAI_CREDS, HELLO_CALL))
        assert exc.value.reason == "APICallFailed"
        assert exc.value.status_code == 401
        assert "bad key" in exc.value.message

    @pytest.mark.asyncio
    async def test_connect_error(self, test_config):
        """Transport failures are APICallFailed."""
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        provider = OpenAIProvider(test_config, transport=httpx.MockTransport(handler))
        with pytest.raises(ProviderInvocationError) as exc:
            await _drain(provider.stream("gpt-4o", OPENAI_CREDS, HELLO_CALL))
        assert exc.value.reason == "APICallFailed"
        assert exc.value.status_code is None

    @pytest.mark.asyncio
    async def test_generate(self, test_config):
        """generate() drains the stream into output items."""
        body = _sse({"choices": [{"delta": {"content": "Hello"}, "finish_reason": "stop"}]})
        provider = OpenAIProvider(test_config, transport=_transport(body))
        result = await provider.generate("gpt-4o", OPENAI_CREDS, HELLO_CALL)
        assert result.text == "Hello"
        assert result.finish_reason == "stop"
        assert result.output_items[0]["type"] == "message"

    @pytest.mark.asyncio
    async def test_generate_raises_on_error_part(self, test_config):
        body = _sse({"error": {"type": "server_error", "code": "overloaded", "message": "busy"}})
        provider = OpenAIProvider(test_config, transport=_transport(body))
        with pytest.raises(ProviderInvocationError) as exc:
            await provider.generate("gpt-4o", OPENAI_CREDS, HELLO_CALL)
        assert exc.value.reason == "StreamError"
        assert exc.value.code == "overloaded"


# ============================================================================
# Anthropic
# ============================================================================

class TestAnthropicProvider:
    """Test the Messages adapter."""

    def test_build_payload(self, test_config):
        """System text is joined; thinking raises max_tokens above the budget."""
        provider = AnthropicProvider(test_config)
        payload = provider.build_payload(
            "claude-sonnet-4-5-20250929",
            {
                "messages": [
                    {"role": "system", "content": "A", "developer": False},
                    {"role": "system", "content": "B", "developer": True},
                    {"role": "user", "content": "q1"},
                    {"role": "user", "content": [{"type": "text", "text": "q2"}]},
                ],
                "max_output_tokens": 100,
                "output": {"schema": {"type": "object"}},
                "tools": {"f": {"parameters": {"type": "object"}, "description": "d"}},
                "tool_choice": "required",
                "provider_options": {"anthropic": {"thinking": {"type": "enabled", "budget_tokens": 4096}}},
            },
        )
        assert payload["system"].startswith("A\n\nB\n\nRespond only with a single JSON object")
        assert payload["messages"] == [
            {"role": "user", "content": [{"type": "text", "text": "q1"}, {"type": "text", "text": "q2"}]}
        ]
        assert payload["max_tokens"] == 4096 + 1024
        assert payload["thinking"] == {"type": "enabled", "budget_tokens": 4096}
        assert payload["tools"] == [{"name": "f", "description": "d", "input_schema": {"type": "object"}}]
        assert payload["tool_choice"] == {"type": "any"}

    def test_default_max_tokens(self, test_config):
        payload = AnthropicProvider(test_config).build_payload("claude", HELLO_CALL)
        assert payload["max_tokens"] == test_config.anthropic_default_max_tokens
        assert "thinking" not in payload

    def test_zero_temperature_is_sent(self, test_config):
        payload = AnthropicProvider(test_config).build_payload("claude", {**HELLO_CALL, "temperature": 0.0})
        assert payload["temperature"] == 0.0
        assert "top_p" not in payload

    def test_tool_results_go_in_user_turn(self, test_config):
        _, msgs = AnthropicProvider(test_config).convert_messages(
            [
                {
                    "role": "tool",
                    "content": [
                        {
                            "type": "tool-result",
                            "tool_call_id": "t1",
                            "tool_name": "f",
                            "output": {"type": "text", "value": "42"},
                        }
                    ],
                }
            ]
        )
        assert msgs == [{"role": "user", "content": [{"type": "tool_result", "tool_use_id": "t1", "content": "42"}]}]

    @pytest.mark.asyncio
    async def test_stream(self, test_config):
        """Thinking, text and tool_use blocks with usage from start and delta."""
        seen = []
        body = _named_sse(
            {"type": "message_start", "message": {"usage": {"input_tokens": 20, "cache_read_input_tokens": 5, "output_tokens": 1}}},
            {"type": "content_block_start", "index": 0, "content_block": {"type": "thinking"}},
            {"type": "content_block_delta", "index": 0, "delta": {"type": "thinking_delta", "thinking": "plan"}},
            {"type": "content_block_stop", "index": 0},
            {"type": "content_block_start", "index": 1, "content_block": {"type": "text"}},
            {"type": "content_block_delta", "index": 1, "delta": {"type": "text_delta", "text": "Hi"}},
            {"type": "content_block_stop", "index": 1},
            {"type": "content_block_start", "index": 2, "content_block": {"type": "tool_use", "id": "tu1", "name": "f"}},
            {"type": "content_block_delta", "index": 2, "delta": {"type": "input_json_delta", "partial_json": "{}"}},
            {"type": "content_block_stop", "index": 2},
            {"type": "message_delta", "delta": {"stop_reason": "tool_use"}, "usage": {"output_tokens": 9}},
            {"type": "message_stop"},
        )
        provider = AnthropicProvider(test_config, transport=_transport(body, seen=seen))
        parts = await _drain(provider.stream("claude-sonnet-4-5-20250929", {"api_key": "sk-ant"}, HELLO_CALL))

        assert _types(parts) == [
            "reasoning-start",
            "reasoning-delta",
            "reasoning-end",
            "text-start",
            "text-delta",
            "text-end",
            "tool-input-start",
            "tool-input-delta",
            "tool-input-end",
            "finish",
        ]
        assert parts[6] == {"type": "tool-input-start", "tool_call_id": "tu1", "tool_name": "f"}
        assert parts[-1]["finish_reason"] == "tool_use"
        assert parts[-1]["usage"] == {
            "input_tokens": 20,
            "output_tokens": 9,
            "total_tokens": 29,
            "cached_tokens": 5,
            "reasoning_tokens": 0,
        }
        assert seen[0].headers["x-api-key"] == "sk-ant"
        assert seen[0].headers["anthropic-version"] == test_config.anthropic_version

    @pytest.mark.asyncio
    async def test_stream_error_event(self, test_config):
        body = _named_sse({"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}})
        provider = AnthropicProvider(test_config, transport=_transport(body))
        parts = await _drain(provider.stream("claude", {"api_key": "k"}, HELLO_CALL))
        assert parts == [{"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}}]


# ============================================================================
# Bedrock
# ============================================================================

class FakeBedrockClient:
    """Records converse_stream requests and replays canned events."""

    def __init__(self, events=None, error=None):
        self.events = events or []
        self.error = error
        self.requests = []

    def converse_stream(self, **request):
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return {"stream": list(self.events)}


def _bedrock(test_config, client):
    factory_calls = []

    def factory(service, **kwargs):
        factory_calls.append((service, kwargs))
        return client

    return BedrockProvider(test_config, client_factory=factory), factory_calls


class TestBedrockProvider:
    """Test the Converse adapter."""

    def test_build_request(self, test_config):
        provider, _ = _bedrock(test_config, FakeBedrockClient())
        request = provider.build_request(
            "global.anthropic.claude-sonnet-4-5-20250929-v1:0",
            {
                "messages": HELLO_CALL["messages"] + [{"role": "assistant", "content": "ok"}],
                "max_output_tokens": 256,
                "temperature": 0.2,
                "tools": {"f": {"parameters": {"type": "object"}}},
                "tool_choice": "auto",
                "provider_options": {"bedrock": {"reasoning_config": {"type": "enabled", "budget_tokens": 1024}}},
            },
        )
        assert request["system"] == [{"text": "Be brief."}]
        assert request["messages"] == [
            {"role": "user", "content": [{"text": "hi"}]},
            {"role": "assistant", "content": [{"text": "ok"}]},
        ]
        assert request["inferenceConfig"] == {"maxTokens": 1024 + 1024, "temperature": 0.2}
        assert request["toolConfig"]["toolChoice"] == {"auto": {}}
        assert request["toolConfig"]["tools"][0]["toolSpec"]["inputSchema"] == {"json": {"type": "object"}}
        assert request["additionalModelRequestFields"] == {"thinking": {"type": "enabled", "budget_tokens": 1024}}

    def test_build_request_nova_reasoning_and_no_tools(self, test_config):
        """tool_choice none drops toolConfig; Nova uses maxReasoningEffort."""
        provider, _ = _bedrock(test_config, FakeBedrockClient())
        request = provider.build_request(
            "us.amazon.nova-2-lite-v1:0",
            {
                "messages": HELLO_CALL["messages"],
                "tools": {"f": {"parameters": {"type": "object"}}},
                "tool_choice": "none",
                "provider_options": {
                    "bedrock": {"reasoning_config": {"type": "enabled", "max_reasoning_effort": "max"}}
                },
            },
        )
        assert "toolConfig" not in request
        assert request["additionalModelRequestFields"] == {
            "reasoningConfig": {"type": "enabled", "maxReasoningEffort": "max"}
        }

    def test_zero_temperature_is_sent(self, test_config):
        provider, _ = _bedrock(test_config, FakeBedrockClient())
        request = provider.build_request("us.amazon.nova-pro-v1:0", {**HELLO_CALL, "temperature": 0.0})
        assert request["inferenceConfig"] == {"temperature": 0.0}

    def test_thinking_budget_raises_max_tokens(self, test_config):
        """maxTokens leaves room for the thinking budget, with or without a caller limit."""
        provider, _ = _bedrock(test_config, FakeBedrockClient())
        thinking = {"bedrock": {"reasoning_config": {"type": "enabled", "budget_tokens": 8000}}}

        small = provider.build_request("claude", {**HELLO_CALL, "max_output_tokens": 100, "provider_options": thinking})
        unset = provider.build_request("claude", {**HELLO_CALL, "provider_options": thinking})
        large = provider.build_request("claude", {**HELLO_CALL, "max_output_tokens": 20000, "provider_options": thinking})

        assert small["inferenceConfig"]["maxTokens"] == 9024
        assert unset["inferenceConfig"]["maxTokens"] == max(test_config.anthropic_default_max_tokens, 9024)
        assert large["inferenceConfig"]["maxTokens"] == 20000

    def test_invalid_base64_is_invalid_input(self, test_config):
        """Undecodable client media is a non-retryable input error."""
        provider, _ = _bedrock(test_config, FakeBedrockClient())
        call = {
            "messages": [
                {
                    "role": "user",
                    "content": [{"type": "image", "media_type": "image/png", "data": "!!!notbase64"}],
                }
            ]
        }
        with pytest.raises(ProviderInvocationError) as exc:
            provider.build_request("us.amazon.nova-pro-v1:0", call)
        assert exc.value.reason == "InvalidInput"
        assert exc.value.retryable is False

    def test_valid_base64_image(self, test_config):
        provider, _ = _bedrock(test_config, FakeBedrockClient())
        call = {
            "messages": [
                {"role": "user", "content": [{"type": "image", "media_type": "image/png", "data": "iVBORw0KGgo="}]}
            ]
        }
        request = provider.build_request("us.amazon.nova-pro-v1:0", call)
        image = request["messages"][0]["content"][0]["image"]
        assert image["format"] == "png"
        assert image["source"]["bytes"].startswith(b"\x89PNG")

    @pytest.mark.asyncio
    async def test_stream(self, test_config):
        """Converse events map to parts; metadata carries usage."""
        client = FakeBedrockClient(
            [
                {"messageStart": {"role": "assistant"}},
                {"contentBlockDelta": {"contentBlockIndex": 0, "delta": {"reasoningContent": {"text": "r"}}}},
                {"contentBlockStop": {"contentBlockIndex": 0}},
                {"contentBlockDelta": {"contentBlockIndex": 1, "delta": {"text": "Hi"}}},
                {"contentBlockStop": {"contentBlockIndex": 1}},
                {
                    "contentBlockStart": {
                        "contentBlockIndex": 2,
                        "start": {"toolUse": {"toolUseId": "tu", "name": "f"}},
                    }
                },
                {"contentBlockDelta": {"contentBlockIndex": 2, "delta": {"toolUse": {"input": "{}"}}}},
                {"contentBlockStop": {"contentBlockIndex": 2}},
                {"messageStop": {"stopReason": "tool_use"}},
                {"metadata": {"usage": {"inputTokens": 7, "outputTokens": 3}}},
            ]
        )
        provider, factory_calls = _bedrock(test_config, client)
        parts = await _drain(provider.stream("us.amazon.nova-pro-v1:0", BEDROCK_CREDS, HELLO_CALL))

        assert _types(parts) == [
            "reasoning-start",
            "reasoning-delta",
            "reasoning-end",
            "text-start",
            "text-delta",
            "text-end",
            "tool-input-start",
            "tool-input-delta",
            "tool-input-end",
            "finish",
        ]
        assert parts[-1]["finish_reason"] == "tool_use"
        assert parts[-1]["usage"]["total_tokens"] == 10
        assert factory_calls == [
            (
                "bedrock-runtime",
                {"region_name": "us-east-1", "aws_access_key_id": "AKIA", "aws_secret_access_key": "secret"},
            )
        ]
        assert client.requests[0]["modelId"] == "us.amazon.nova-pro-v1:0"

    @pytest.mark.asyncio
    async def test_stream_exception_event(self, test_config):
        """Modelled stream exceptions become error parts."""
        client = FakeBedrockClient(
            [
                {"contentBlockDelta": {"contentBlockIndex": 0, "delta": {"text": "x"}}},
                {"throttlingException": {"message": "Too many requests"}},
            ]
        )
        provider, _ = _bedrock(test_config, client)
        parts = await _drain(provider.stream("m", BEDROCK_CREDS, HELLO_CALL))
        assert _types(parts) == ["text-start", "text-delta", "text-end", "error"]
        assert parts[-1]["error"] == {"type": "throttlingException", "message": "Too many requests"}

    @pytest.mark.asyncio
    async def test_client_error(self, test_config):
        """ClientError carries the HTTP status and error code."""
        error = ClientError(
            {"Error": {"Code": "AccessDeniedException", "Message": "denied"}, "ResponseMetadata": {"HTTPStatusCode": 403}},
            "ConverseStream",
        )
        provider, _ = _bedrock(test_config, FakeBedrockClient(error=error))
        with pytest.raises(ProviderInvocationError) as exc:
            await _drain(provider.stream("m", BEDROCK_CREDS, HELLO_CALL))
        assert exc.value.status_code == 403
        assert exc.value.code == "AccessDeniedException"

    @pytest.mark.asyncio
    async def test_empty_stream_generate(self, test_config):
        """A stream with only a finish part still produces a result."""
        provider, _ = _bedrock(test_config, FakeBedrockClient([]))
        result = await provider.generate("m", BEDROCK_CREDS, HELLO_CALL)
        assert result.text == ""
        assert result.output_items == []
        assert result.usage == empty_usage()


# ============================================================================
# Registry
# ============================================================================

class TestRegistry:
    """Test provider lookup and the classifier completion hook."""

    def test_default_registry(self, test_config):
        registry = ProviderRegistry.default(test_config)
        assert registry.names() == ["openai", "anthropic", "amazon-bedrock"]
        assert isinstance(registry.get("anthropic"), AnthropicProvider)

    def test_unknown_provider(self, test_config):
        with pytest.raises(ProviderInvocationError) as exc:
            ProviderRegistry.default(test_config).get("mistral")
        assert exc.value.reason == "APICallFailed"

    @pytest.mark.asyncio
    async def test_classifier_complete(self, test_config):
        """The completion hook asks for structured output and returns text."""
        seen = []
        body = _sse({"choices": [{"delta": {"content": '{"category": "finance"}'}}]})
        registry = ProviderRegistry({"openai": OpenAIProvider(test_config, transport=_transport(body, seen=seen))})

        class Creds:
            def get_credentials(self, user_id, provider):
                assert (user_id, provider) == ("local", "openai")
                return OPENAI_CREDS

        complete = build_classifier_complete(registry, Creds(), provider="openai", model="gpt-4o-mini", user_id="local")
        text = await complete("sys", "question", {"type": "object"})
        assert text == '{"category": "finance"}'
        sent = json.loads(seen[0].content)
        assert sent["response_format"]["json_schema"]["name"] == "classification"
        assert sent["messages"][1] == {"role": "user", "content": "question"}
