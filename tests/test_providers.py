import json

import httpx
import openai
import pytest

from chat_gateway.proxy import config
from chat_gateway.proxy import exceptions as EX
from chat_gateway.proxy.client import _resolve_upstream_key
from chat_gateway.proxy.exceptions import APIException
from chat_gateway.proxy.provider_anthropic import AnthropicProvider, is_claude_model
from chat_gateway.proxy.provider_kimi import KimiProvider

from .helpers import (
    MESSAGE_START,
    MESSAGE_STOP,
    RecordingTransport,
    anthropic_sse,
    deltas,
    fake_kimi_client,
    kimi_chunk,
    message_delta,
    parse_sse,
    text_delta,
    tool_delta,
    tool_start,
)

WEATHER_TOOL = {
    "type": "function",
    "function": {"name": "get_weather", "parameters": {"type": "object", "properties": {"city": {"type": "string"}}}},
}


def _anthropic(payload, handler, token="test-token"):
    transport = RecordingTransport(handler)
    provider = AnthropicProvider(payload, token=token, request_id="req-1", http_client=httpx.Client(transport=transport))
    return provider, transport


def _anthropic_message(content, stop_reason="end_turn"):
    return {
        "id": "msg_1",
        "type": "message",
        "role": "assistant",
        "content": content,
        "stop_reason": stop_reason,
        "usage": {"input_tokens": 12, "output_tokens": 3},
    }


class TestAnthropicProvider:
    def test_claude_models_are_routed_here(self):
        assert is_claude_model("claude-3-haiku-20240307")
        assert is_claude_model("Claude-3-opus")
        assert not is_claude_model("kimi")
        assert not is_claude_model(None)

    def test_complete_sends_messages_request(self):
        payload = {
            "model": "claude-3-haiku-20240307",
            "messages": [
                {"role": "system", "content": "Be brief."},
                {"role": "user", "content": "Hi"},
            ],
            "temperature": 0.2,
            "stop": "END",
        }
        provider, transport = _anthropic(
            payload, lambda request: httpx.Response(200, json=_anthropic_message([{"type": "text", "text": "Hello"}]))
        )
        result = provider.complete()

        [request] = transport.requests
        assert str(request.url) == "https://anthropic.test/v1/messages"
        assert request.headers["x-api-key"] == "test-token"
        assert request.headers["anthropic-version"] == "2023-06-01"
        assert request.headers["x-request-id"] == "req-1"
        body = json.loads(request.content)
        assert body == {
            "model": "claude-3-haiku-20240307",
            "messages": [{"role": "user", "content": [{"type": "text", "text": "Hi"}]}],
            "max_tokens": 4096,
            "system": "Be brief.",
            "temperature": 0.2,
            "stop_sequences": ["END"],
        }
        assert result["choices"][0]["message"] == {"role": "assistant", "content": "Hello"}
        assert result["usage"]["total_tokens"] == 15

    def test_tools_and_tool_choice(self):
        payload = {
            "model": "claude-3-haiku-20240307",
            "messages": [{"role": "user", "content": "weather?"}],
            "tools": [WEATHER_TOOL],
            "tool_choice": "required",
            "max_tokens": 256,
        }
        provider, _ = _anthropic(payload, lambda request: httpx.Response(200, json={}))
        body = provider.build_request()
        assert body["tools"][0]["name"] == "get_weather"
        assert body["tool_choice"] == {"type": "any"}
        assert body["max_tokens"] == 256

    def test_tool_choice_none_drops_tools(self):
        payload = {"model": "claude", "messages": [{"role": "user", "content": "x"}], "tools": [WEATHER_TOOL], "tool_choice": "none"}
        provider, _ = _anthropic(payload, lambda request: httpx.Response(200, json={}))
        body = provider.build_request()
        assert "tools" not in body
        assert "tool_choice" not in body

    def test_tool_ids_round_trip(self):
        payload = {
            "model": "claude",
            "messages": [
                {"role": "user", "content": "weather?"},
                {
                    "role": "assistant",
                    "tool_calls": [
                        {"id": "call_1", "type": "function", "function": {"name": "get_weather", "arguments": "{}"}}
                    ],
                },
                {"role": "tool", "tool_call_id": "call_1", "content": "sunny"},
            ],
        }

        def handler(request):
            body = json.loads(request.content)
            backend_id = body["messages"][1]["content"][0]["id"]
            assert body["messages"][2]["content"][0]["tool_use_id"] == backend_id
            return httpx.Response(
                200,
                json=_anthropic_message(
                    [{"type": "tool_use", "id": backend_id, "name": "get_weather", "input": {}}], "tool_use"
                ),
            )

        provider, _ = _anthropic(payload, handler)
        result = provider.complete()
        assert result["choices"][0]["message"]["tool_calls"][0]["id"] == "call_1"

    def test_upstream_status_is_mapped(self):
        error_body = {"type": "error", "error": {"type": "rate_limit_error", "message": "Slow down"}}
        provider, _ = _anthropic(
            {"model": "claude", "messages": [{"role": "user", "content": "x"}]},
            lambda request: httpx.Response(429, json=error_body),
        )
        with pytest.raises(APIException) as info:
            provider.complete()
        assert info.value.errcode == EX.API_RATE_LIMIT_EXCEEDED[0]
        assert info.value.errmsg == "Slow down"

    def test_malformed_body(self):
        provider, _ = _anthropic(
            {"model": "claude", "messages": [{"role": "user", "content": "x"}]},
            lambda request: httpx.Response(200, content=b"not json"),
        )
        with pytest.raises(APIException) as info:
            provider.complete()
        assert info.value.errcode == EX.API_INTERNAL_ERROR[0]

    def test_transport_error_is_mapped(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        provider, _ = _anthropic({"model": "claude", "messages": [{"role": "user", "content": "x"}]}, handler)
        with pytest.raises(APIException) as info:
            provider.complete()
        assert info.value.errcode == EX.API_CONNECTION_ERROR[0]

    def test_stream(self):
        body = anthropic_sse(
            MESSAGE_START,
            text_delta(0, "Hi"),
            tool_start(1, "get_weather", "toolu_9"),
            tool_delta(1, '{"city": "Paris"}'),
            message_delta("tool_use"),
            MESSAGE_STOP,
        )
        provider, transport = _anthropic(
            {"model": "claude", "messages": [{"role": "user", "content": "x"}], "stream": True},
            lambda request: httpx.Response(200, content=body, headers={"content-type": "text/event-stream"}),
        )
        frames, close = provider.stream()
        events = parse_sse(list(frames))
        close()

        [request] = transport.requests
        assert json.loads(request.content)["stream"] is True
        assert request.headers["accept"] == "text/event-stream"
        assert deltas(events)[1] == {"content": "Hi"}
        assert deltas(events)[2]["tool_calls"][0]["id"] == "toolu_9"
        assert events[-2]["choices"][0]["finish_reason"] == "tool_calls"
        assert events[-1] == "[DONE]"

    def test_stream_rejected_upstream(self):
        provider, _ = _anthropic(
            {"model": "claude", "messages": [{"role": "user", "content": "x"}], "stream": True},
            lambda request: httpx.Response(500, json={"error": {"message": "boom"}}),
        )
        frames, close = provider.stream()
        events = parse_sse(list(frames))
        assert close is None
        assert deltas(events) == [{"content": "Error: Anthropic upstream error 500: Internal Server Error"}]
        assert events[-1] == "[DONE]"

    def test_missing_key_without_forwarding(self, monkeypatch):
        monkeypatch.setattr(config, "PROXY_FORWARD_AUTH_HEADER", False)
        provider, _ = _anthropic(
            {"model": "claude", "messages": [{"role": "user", "content": "x"}]},
            lambda request: httpx.Response(200, json={}),
        )
        with pytest.raises(ValueError, match="ANTHROPIC_API_KEY"):
            provider.complete()


class TestKimiProvider:
    def test_complete(self):
        client = fake_kimi_client(
            response={
                "id": "cmpl-1",
                "created": 1700000000,
                "choices": [{"message": {"role": "assistant", "content": "Hello"}, "finish_reason": "stop"}],
                "usage": {"prompt_tokens": 5, "completion_tokens": 1, "total_tokens": 6},
            }
        )
        payload = {
            "model": "gpt-4",
            "messages": [{"role": "user", "content": "Hi"}],
            "temperature": 0.5,
            "logit_bias": {"1": 1},
        }
        result = KimiProvider(payload, token="t", client=client).complete()

        [call] = client.chat.completions.calls
        assert call == {
            "model": "moonshot-v1-32k",
            "messages": [{"role": "user", "content": "Hi"}],
            "stream": False,
            "temperature": 0.5,
        }
        assert result["model"] == "gpt-4"
        assert result["choices"][0]["message"]["content"] == "Hello"
        assert result["usage"]["total_tokens"] == 6

    def test_tool_markers_are_parsed_when_tools_offered(self):
        client = fake_kimi_client(
            response={"choices": [{"message": {"content": '[invoke tool: get_weather]\narguments: {"city": "Paris"}'}}]}
        )
        payload = {"model": "kimi", "messages": [{"role": "user", "content": "weather?"}], "tools": [WEATHER_TOOL]}
        result = KimiProvider(payload, client=client).complete()
        choice = result["choices"][0]
        assert choice["finish_reason"] == "tool_calls"
        assert choice["message"]["tool_calls"][0]["function"]["arguments"] == '{"city": "Paris"}'
        assert client.chat.completions.calls[0]["tools"] == [WEATHER_TOOL]
        assert "tool_choice" not in client.chat.completions.calls[0]

    def test_tool_history_is_flattened(self):
        client = fake_kimi_client(response={"choices": [{"message": {"content": "done"}}]})
        payload = {
            "model": "kimi",
            "messages": [
                {"role": "user", "content": "weather?"},
                {
                    "role": "assistant",
                    "tool_calls": [
                        {"id": "c1", "type": "function", "function": {"name": "get_weather", "arguments": "{}"}}
                    ],
                },
                {"role": "tool", "tool_call_id": "c1", "content": "sunny"},
            ],
        }
        KimiProvider(payload, client=client).complete()
        sent = client.chat.completions.calls[0]["messages"]
        assert [msg["role"] for msg in sent] == ["user", "assistant", "user"]
        assert sent[2]["content"] == "Tool Response (c1): sunny"

    def test_upstream_error_is_mapped(self):
        error = openai.RateLimitError(
            "slow down",
            response=httpx.Response(429, request=httpx.Request("POST", "http://kimi.test")),
            body=None,
        )
        client = fake_kimi_client(error=error)
        with pytest.raises(APIException) as info:
            KimiProvider({"model": "kimi", "messages": [{"role": "user", "content": "x"}]}, client=client).complete()
        assert info.value.errcode == EX.API_RATE_LIMIT_EXCEEDED[0]

    def test_stream(self):
        client = fake_kimi_client(chunks=[kimi_chunk("He"), kimi_chunk("y"), kimi_chunk(None, "stop")])
        provider = KimiProvider({"model": "kimi", "messages": [{"role": "user", "content": "x"}], "stream": True}, client=client)
        frames, close = provider.stream()
        events = parse_sse(list(frames))
        close()
        assert client.chat.completions.calls[0]["stream"] is True
        assert deltas(events) == [{"role": "assistant"}, {"content": "He"}, {"content": "y"}, {}]
        assert client.chat.completions.stream.closed

    def test_legacy_functions_are_sent_as_tools(self):
        client = fake_kimi_client(response={"choices": [{"message": {"content": "ok"}}]})
        payload = {
            "model": "kimi",
            "messages": [{"role": "user", "content": "x"}],
            "functions": [{"name": "lookup", "parameters": {"type": "object"}}],
            "function_call": {"name": "lookup"},
        }
        KimiProvider(payload, client=client).complete()
        call = client.chat.completions.calls[0]
        assert call["tools"] == [{"type": "function", "function": {"name": "lookup", "parameters": {"type": "object"}}}]
        assert call["tool_choice"] == {"type": "function", "function": {"name": "lookup"}}

    def test_native_tool_calls_are_returned(self):
        client = fake_kimi_client(
            response={
                "choices": [
                    {
                        "message": {
                            "content": "",
                            "tool_calls": [
                                {"id": "c1", "type": "function", "function": {"name": "get_weather", "arguments": '{"city": "Paris"}'}}
                            ],
                        },
                        "finish_reason": "tool_calls",
                    }
                ]
            }
        )
        payload = {"model": "kimi", "messages": [{"role": "user", "content": "weather?"}], "tools": [WEATHER_TOOL]}
        choice = KimiProvider(payload, client=client).complete()["choices"][0]
        assert choice["finish_reason"] == "tool_calls"
        assert choice["message"]["content"] is None
        assert choice["message"]["tool_calls"] == [
            {"id": "c1", "type": "function", "function": {"name": "get_weather", "arguments": '{"city": "Paris"}'}}
        ]

    def test_stream_with_tools_turns_markers_into_tool_calls(self):
        client = fake_kimi_client(
            chunks=[kimi_chunk("[invoke tool: calc]\n"), kimi_chunk('arguments: {"x": 1}'), kimi_chunk(None, "stop")]
        )
        payload = {"model": "kimi", "messages": [{"role": "user", "content": "x"}], "tools": [WEATHER_TOOL], "stream": True}
        frames, _ = KimiProvider(payload, client=client).stream()
        events = parse_sse(list(frames))
        stream_deltas = deltas(events)
        assert stream_deltas[1]["tool_calls"][0]["function"] == {"name": "calc"}
        assert stream_deltas[2]["tool_calls"][0]["function"] == {"arguments": '{"x": 1}'}
        assert all("content" not in delta for delta in stream_deltas)
        assert events[-2]["choices"][0]["finish_reason"] == "tool_calls"

    def test_stream_rejected_upstream(self):
        error = openai.InternalServerError(
            "boom",
            response=httpx.Response(500, request=httpx.Request("POST", "http://kimi.test")),
            body=None,
        )
        client = fake_kimi_client(error=error)
        provider = KimiProvider({"model": "kimi", "messages": [{"role": "user", "content": "x"}], "stream": True}, client=client)
        frames, close = provider.stream()
        events = parse_sse(list(frames))
        assert close is None
        assert deltas(events) == [{"content": "Error: Kimi upstream error 500: Internal Server Error"}]
        assert events[-1] == "[DONE]"

    def test_stream_connection_failure_raises(self):
        error = openai.APIConnectionError(request=httpx.Request("POST", "http://kimi.test"))
        client = fake_kimi_client(error=error)
        provider = KimiProvider({"model": "kimi", "messages": [{"role": "user", "content": "x"}], "stream": True}, client=client)
        with pytest.raises(APIException) as info:
            provider.stream()
        assert info.value.errcode == EX.API_CONNECTION_ERROR[0]


class TestUpstreamKey:
    def test_forwarded_token_wins(self, monkeypatch):
        monkeypatch.setattr(config, "PROXY_FORWARD_AUTH_HEADER", True)
        assert _resolve_upstream_key("incoming", "configured", "KEY") == "incoming"

    def test_configured_key_when_not_forwarding(self, monkeypatch):
        monkeypatch.setattr(config, "PROXY_FORWARD_AUTH_HEADER", False)
        assert _resolve_upstream_key("incoming", "configured", "KEY") == "configured"

    def test_no_key(self):
        with pytest.raises(ValueError, match="KEY is not set"):
            _resolve_upstream_key(None, None, "KEY")
