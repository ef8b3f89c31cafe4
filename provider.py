import json
import uuid
import asyncio
import time
import logging
from typing import Any, AsyncIterator, Dict, Iterator, Optional

import openai
from openai import AsyncOpenAI
from aiolimiter import AsyncLimiter

from config import get_settings
from streaming import (
    SSEBuilder,
    StreamReasoningExtractor,
    map_stop_reason,
    convert_messages,
    convert_tools,
    convert_system,
)
from streaming import parts

logger = logging.getLogger(__name__)


class UpstreamError(Exception):
    def __init__(self, message: str, status_code: int = 500):
        super().__init__(message)
        self.status_code = status_code


class RateLimiter:
    _instance: Optional["RateLimiter"] = None

    def __init__(self):
        settings = get_settings()
        self.limiter = AsyncLimiter(settings.rate_limit, settings.rate_window)
        self._blocked_until = 0.0

    @classmethod
    def get(cls) -> "RateLimiter":
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    async def wait(self) -> bool:
        waited = False
        now = time.time()
        if now < self._blocked_until:
            wait_time = self._blocked_until - now
            logger.warning(f"rate limited, waiting {wait_time:.1f}s")
            await asyncio.sleep(wait_time)
            waited = True
        async with self.limiter:
            return waited

    def block(self, seconds: float = 60):
        self._blocked_until = time.time() + seconds


class UpstreamProvider:
    def __init__(self):
        settings = get_settings()
        self.model = settings.model
        self._tag_name = settings.reasoning_tag_name
        self._extractor = StreamReasoningExtractor(
            settings.reasoning_tag_name,
            separator=settings.reasoning_separator,
        )
        self._client = AsyncOpenAI(
            api_key=settings.upstream_api_key,
            base_url=settings.upstream_base_url,
            max_retries=settings.max_retries,
            timeout=settings.timeout,
        )
        self._rate_limiter = RateLimiter.get()

    def _build_request(self, request: Any, stream: bool = False) -> dict:
        messages = convert_messages(request.messages, tag_name=self._tag_name)

        if request.system:
            sys_msg = convert_system(request.system)
            if sys_msg:
                messages.insert(0, sys_msg)

        body = {
            "model": self.model,
            "messages": messages,
            "max_tokens": request.max_tokens,
        }

        if request.temperature is not None:
            body["temperature"] = request.temperature
        if request.top_p is not None:
            body["top_p"] = request.top_p
        if request.stop_sequences:
            body["stop"] = request.stop_sequences
        if request.tools:
            body["tools"] = convert_tools(request.tools)
        if stream:
            body["stream_options"] = {"include_usage": True}

        return body

    async def stream_parts(self, body: dict) -> AsyncIterator[Dict[str, Any]]:
        text_id: Optional[str] = None
        text_runs = 0
        tools: Dict[int, Dict[str, Any]] = {}
        finish_reason = None
        usage = None

        try:
            stream = await self._client.chat.completions.create(**body, stream=True)
            async for chunk in stream:
                if getattr(chunk, "usage", None):
                    usage = {
                        "input_tokens": chunk.usage.prompt_tokens,
                        "output_tokens": chunk.usage.completion_tokens,
                    }

                if not chunk.choices:
                    continue

                choice = chunk.choices[0]
                delta = choice.delta

                if choice.finish_reason:
                    finish_reason = choice.finish_reason

                # native reasoning, passed through the extractor untouched
                reasoning = getattr(delta, "reasoning_content", None)
                if reasoning:
                    yield parts.reasoning_delta("reasoning-0", reasoning)

                if delta.content:
                    if text_id is None:
                        text_id = f"txt-{text_runs}"
                        text_runs += 1
                        yield parts.text_start(text_id)
                    yield parts.text_delta(text_id, delta.content)

                if delta.tool_calls:
                    if text_id is not None:
                        yield parts.text_end(text_id)
                        text_id = None
                    for tc in delta.tool_calls:
                        for part in self._tool_call_parts(tc, tools):
                            yield part

        except Exception as e:
            logger.error(f"stream error: {type(e).__name__}: {e}")
            if text_id is not None:
                yield parts.text_end(text_id)
                text_id = None
            yield parts.error(str(self._map_error(e)))

        if text_id is not None:
            yield parts.text_end(text_id)
        yield parts.finish(finish_reason, usage)

    async def stream(self, request: Any, input_tokens: int = 0) -> AsyncIterator[str]:
        await self._rate_limiter.wait()

        message_id = f"msg_{uuid.uuid4()}"
        sse = SSEBuilder(message_id, self.model, input_tokens)

        body = self._build_request(request, stream=True)
        logger.info(f"stream: model={body.get('model')} msgs={len(body.get('messages', []))} tools={len(body.get('tools', []))}")

        yield sse.message_start()

        finish_reason = None
        usage = None
        error_occurred = False

        extracted = self._extractor.wrap_stream(self.stream_parts)
        async for part in extracted(body):
            if part["type"] == parts.FINISH:
                finish_reason = part["finish_reason"]
                usage = part["usage"]
                continue
            if part["type"] == parts.ERROR:
                error_occurred = True
            for event in sse.render(part):
                yield event

        # ensure at least one content block
        if not error_occurred and not sse.has_content():
            for event in sse.ensure_text():
                yield event
            yield sse.emit_text(" ")

        for event in sse.close_content():
            yield event

        output_tokens = usage["output_tokens"] if usage else sse.estimate_tokens()
        yield sse.message_delta(map_stop_reason(finish_reason), output_tokens)
        yield sse.message_stop()

    async def complete(self, request: Any) -> dict:
        await self._rate_limiter.wait()
        body = self._build_request(request, stream=False)
        logger.info(f"complete: model={body.get('model')} msgs={len(body.get('messages', []))} tools={len(body.get('tools', []))}")

        try:
            response = await self._client.chat.completions.create(**body)
            return response.model_dump()
        except Exception as e:
            logger.error(f"complete error: {type(e).__name__}: {e}")
            raise self._map_error(e)

    def convert_response(self, response_json: dict) -> dict:
        choice = response_json["choices"][0]
        message = choice["message"]
        content = []

        reasoning = message.get("reasoning_content")
        text = message.get("content")

        if isinstance(text, str) and not reasoning:
            reasoning, text = self._extractor.extract(text)

        if reasoning:
            content.append({"type": "thinking", "thinking": reasoning})
        if text:
            content.append({"type": "text", "text": text})

        for tc in message.get("tool_calls") or []:
            try:
                args = json.loads(tc["function"]["arguments"])
            except (TypeError, ValueError):
                args = tc["function"].get("arguments", {})
            content.append({
                "type": "tool_use",
                "id": tc["id"],
                "name": tc["function"]["name"],
                "input": args,
            })

        if not content:
            content.append({"type": "text", "text": " "})

        usage = response_json.get("usage") or {}
        return {
            "id": response_json.get("id") or f"msg_{uuid.uuid4()}",
            "type": "message",
            "role": "assistant",
            "model": self.model,
            "content": content,
            "stop_reason": map_stop_reason(choice.get("finish_reason")),
            "stop_sequence": None,
            "usage": {
                "input_tokens": usage.get("prompt_tokens", 0),
                "output_tokens": usage.get("completion_tokens", 0),
                "cache_creation_input_tokens": 0,
                "cache_read_input_tokens": 0,
            },
        }

    def _tool_call_parts(self, tc: Any, tools: Dict[int, Dict[str, Any]]) -> Iterator[Dict[str, Any]]:
        tc_index = tc.index if tc.index is not None else len(tools)
        entry = tools.setdefault(tc_index, {"id": None, "name": "", "started": False})
        fn_delta = tc.function

        if tc.id:
            entry["id"] = tc.id
        if fn_delta is not None and fn_delta.name:
            entry["name"] += fn_delta.name

        args = (fn_delta.arguments if fn_delta is not None else None) or ""
        if not entry["started"] and (entry["name"] or args):
            tool_id = entry["id"] or f"toolu_{uuid.uuid4().hex[:8]}"
            yield parts.tool_call_start(tc_index, tool_id, entry["name"] or "tool_call")
            entry["started"] = True

        if args:
            yield parts.tool_call_delta(tc_index, args)

    def _map_error(self, e: Exception) -> Exception:
        if isinstance(e, openai.AuthenticationError):
            return UpstreamError(f"authentication error: {e}", 401)
        if isinstance(e, openai.RateLimitError):
            self._rate_limiter.block(60)
            return UpstreamError(f"rate limit error: {e}", 429)
        if isinstance(e, openai.BadRequestError):
            return UpstreamError(f"bad request: {e}", 400)
        if isinstance(e, openai.APIStatusError):
            return UpstreamError(f"api error: {e}", e.status_code)
        if isinstance(e, openai.APIError):
            return UpstreamError(f"api error: {e}", 502)
        return e


_provider: Optional[UpstreamProvider] = None


def get_provider() -> UpstreamProvider:
    global _provider
    if _provider is None:
        _provider = UpstreamProvider()
    return _provider


async def cleanup_provider():
    global _provider
    if _provider:
        await _provider._client.close()
    _provider = None
