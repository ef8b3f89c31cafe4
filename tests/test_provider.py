"""Tests for the upstream provider: chunk mapping, SSE output and error mapping."""

import httpx
import openai
import pytest

from models import MessagesRequest
from provider import UpstreamError
from streaming import parts
from conftest import make_chunk, make_tool_call, make_usage_chunk, parse_events


def make_request(stream=True, **kwargs):
    return MessagesRequest(
        model="claude-test",
        messages=[{"role": "user", "content": "what is the answer?"}],
        stream=stream,
        **kwargs,
    )


async def collect(provider, request):
    return parse_events([event async for event in provider.stream(request)])


class TestStreamParts:
    async def test_maps_content_and_usage(self, provider, fake_client):
        fake_client.completions.chunks = [
            make_chunk(content="<think>plan"),
            make_chunk(content="</think>answer", finish_reason="stop"),
            make_usage_chunk(5, 7),
        ]
        out = [p async for p in provider.stream_parts({"model": "m", "messages": []})]
        assert out == [
            parts.text_start("txt-0"),
            parts.text_delta("txt-0", "<think>plan"),
            parts.text_delta("txt-0", "</think>answer"),
            parts.text_end("txt-0"),
            parts.finish("stop", {"input_tokens": 5, "output_tokens": 7}),
        ]

    async def test_upstream_failure_becomes_error_part(self, provider, fake_client):
        fake_client.completions.error = RuntimeError("boom")
        out = [p async for p in provider.stream_parts({"model": "m", "messages": []})]
        assert out == [parts.error("boom"), parts.finish(None, None)]


class TestStream:
    async def test_inline_reasoning_becomes_thinking_block(self, provider, fake_client):
        fake_client.completions.chunks = [
            make_chunk(content="<think>plan"),
            make_chunk(content="</think>answer", finish_reason="stop"),
            make_usage_chunk(5, 7),
        ]
        events = await collect(provider, make_request())

        assert [name for name, _ in events] == [
            "message_start",
            "content_block_start",
            "content_block_delta",
            "content_block_stop",
            "content_block_start",
            "content_block_delta",
            "content_block_stop",
            "message_delta",
            "message_stop",
        ]
        assert events[1][1]["content_block"]["type"] == "thinking"
        assert events[2][1]["delta"] == {"type": "thinking_delta", "thinking": "plan"}
        assert events[4][1]["content_block"]["type"] == "text"
        assert events[5][1]["delta"] == {"type": "text_delta", "text": "answer"}
        assert events[7][1]["delta"]["stop_reason"] == "end_turn"
        assert events[7][1]["usage"]["output_tokens"] == 7

    async def test_native_reasoning_passes_through(self, provider, fake_client):
        fake_client.completions.chunks = [
            make_chunk(reasoning="native thought"),
            make_chunk(content="answer text", finish_reason="stop"),
        ]
        events = await collect(provider, make_request())
        deltas = [data["delta"] for name, data in events if name == "content_block_delta"]
        assert deltas == [
            {"type": "thinking_delta", "thinking": "native thought"},
            {"type": "text_delta", "text": "answer text"},
        ]

    async def test_tool_calls_close_text_block(self, provider, fake_client):
        fake_client.completions.chunks = [
            make_chunk(content="Let me search."),
            make_chunk(tool_calls=[make_tool_call(0, name="search", call_id="call_1")]),
            make_chunk(tool_calls=[make_tool_call(0, arguments='{"q": ')]),
            make_chunk(tool_calls=[make_tool_call(0, arguments='"x"}')], finish_reason="tool_calls"),
        ]
        events = await collect(provider, make_request())

        starts = [data["content_block"] for name, data in events if name == "content_block_start"]
        assert starts[0]["type"] == "text"
        assert starts[1] == {"type": "tool_use", "id": "call_1", "name": "search", "input": {}}

        json_parts = [
            data["delta"]["partial_json"]
            for name, data in events
            if name == "content_block_delta" and data["delta"]["type"] == "input_json_delta"
        ]
        assert "".join(json_parts) == '{"q": "x"}'
        assert events[-2][1]["delta"]["stop_reason"] == "tool_use"

        stops = [data["index"] for name, data in events if name == "content_block_stop"]
        assert stops == [0, 1]

    async def test_error_is_rendered_as_text_block(self, provider, fake_client):
        fake_client.completions.error = RuntimeError("boom")
        events = await collect(provider, make_request())
        texts = [
            data["delta"]["text"]
            for name, data in events
            if name == "content_block_delta"
        ]
        assert texts == ["boom"]
        assert events[-1][0] == "message_stop"

    async def test_empty_answer_gets_placeholder_text(self, provider, fake_client):
        fake_client.completions.chunks = [make_chunk(finish_reason="stop")]
        events = await collect(provider, make_request())
        deltas = [data["delta"] for name, data in events if name == "content_block_delta"]
        assert deltas == [{"type": "text_delta", "text": " "}]

    async def test_stream_requests_usage(self, provider, fake_client):
        fake_client.completions.chunks = [make_chunk(content="hello there", finish_reason="stop")]
        await collect(provider, make_request())
        body = fake_client.completions.calls[0]
        assert body["stream"] is True
        assert body["stream_options"] == {"include_usage": True}
        assert body["model"] == "test-model"


class TestComplete:
    async def test_inline_reasoning_split(self, provider, fake_client):
        fake_client.completions.response = {
            "id": "cmpl-1",
            "choices": [{
                "message": {"role": "assistant", "content": "<think>plan</think>answer"},
                "finish_reason": "stop",
            }],
            "usage": {"prompt_tokens": 3, "completion_tokens": 4},
        }
        response = provider.convert_response(await provider.complete(make_request(stream=False)))
        assert response["content"] == [
            {"type": "thinking", "thinking": "plan"},
            {"type": "text", "text": "answer"},
        ]
        assert response["usage"]["output_tokens"] == 4
        assert response["stop_reason"] == "end_turn"

    def test_native_reasoning_keeps_content(self, provider):
        response = provider.convert_response({
            "choices": [{
                "message": {"content": "answer", "reasoning_content": "thought"},
                "finish_reason": "length",
            }],
        })
        assert response["content"] == [
            {"type": "thinking", "thinking": "thought"},
            {"type": "text", "text": "answer"},
        ]
        assert response["stop_reason"] == "max_tokens"

    def test_tool_calls(self, provider):
        response = provider.convert_response({
            "choices": [{
                "message": {
                    "content": None,
                    "tool_calls": [{
                        "id": "call_1",
                        "function": {"name": "search", "arguments": '{"q": "x"}'},
                    }],
                },
                "finish_reason": "tool_calls",
            }],
        })
        assert response["content"] == [
            {"type": "tool_use", "id": "call_1", "name": "search", "input": {"q": "x"}},
        ]

    async def test_errors_are_mapped(self, provider, fake_client):
        request = httpx.Request("POST", "https://upstream.test/v1/chat/completions")
        response = httpx.Response(429, request=request)
        fake_client.completions.error = openai.RateLimitError("slow down", response=response, body=None)

        with pytest.raises(UpstreamError) as exc_info:
            await provider.complete(make_request(stream=False))
        assert exc_info.value.status_code == 429
        assert provider._rate_limiter.blocked == 60


class TestBuildRequest:
    def test_thinking_replayed_with_tag(self, provider):
        request = MessagesRequest(
            model="claude-test",
            system="be brief",
            messages=[
                {"role": "user", "content": "hi"},
                {"role": "assistant", "content": [
                    {"type": "thinking", "thinking": "plan"},
                    {"type": "text", "text": "hello"},
                ]},
            ],
        )
        body = provider._build_request(request)
        assert body["messages"][0] == {"role": "system", "content": "be brief"}
        assert body["messages"][2] == {"role": "assistant", "content": "<think>plan</think>hello"}
        assert "stream_options" not in body
