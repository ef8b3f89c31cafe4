import json
import logging
from typing import List, Optional, Union

import tiktoken
from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse

from config import get_settings, Settings
from models import (
    MessagesRequest,
    MessagesResponse,
    TokenCountRequest,
    TokenCountResponse,
)
from provider import get_provider, UpstreamProvider, UpstreamError

logger = logging.getLogger(__name__)
router = APIRouter()

try:
    ENCODER = tiktoken.get_encoding("cl100k_base")
except Exception:
    ENCODER = None


def _len_tokens(text: str) -> int:
    if ENCODER:
        return len(ENCODER.encode(text))
    return len(text) // 4


def _count_tokens(messages: List, system: Optional[Union[str, List]] = None, tools: Optional[List] = None) -> int:
    total = 0

    if system:
        if isinstance(system, str):
            total += _len_tokens(system)
        elif isinstance(system, list):
            for block in system:
                total += _len_tokens(getattr(block, "text", ""))

    for msg in messages:
        if isinstance(msg.content, str):
            total += _len_tokens(msg.content)
            continue
        for block in msg.content:
            if block.type == "text":
                total += _len_tokens(block.text or "")
            elif block.type == "thinking":
                total += _len_tokens(block.thinking or "")
            elif block.type == "tool_use":
                total += _len_tokens(block.name or "")
                total += _len_tokens(json.dumps(block.input or {}))
                total += 10
            elif block.type == "tool_result":
                content = block.content or ""
                if isinstance(content, str):
                    total += _len_tokens(content)
                else:
                    total += _len_tokens(json.dumps(content))
                total += 5

    if tools:
        for tool in tools:
            tool_str = tool.name + (tool.description or "") + json.dumps(tool.input_schema)
            total += _len_tokens(tool_str)

    total += len(messages) * 3
    if tools:
        total += len(tools) * 5

    return max(1, total)


@router.post("/v1/messages")
async def create_message(
    request: MessagesRequest,
    provider: UpstreamProvider = Depends(get_provider),
):
    try:
        if request.stream:
            input_tokens = _count_tokens(request.messages, request.system, request.tools)
            return StreamingResponse(
                provider.stream(request, input_tokens=input_tokens),
                media_type="text/event-stream",
                headers={
                    "X-Accel-Buffering": "no",
                    "Cache-Control": "no-cache",
                    "Connection": "keep-alive",
                },
            )

        response = await provider.complete(request)
        return MessagesResponse(**provider.convert_response(response))

    except UpstreamError as e:
        logger.error(f"upstream error: {e}")
        raise HTTPException(status_code=e.status_code, detail=str(e))


@router.post("/v1/messages/count_tokens")
async def count_tokens(request: TokenCountRequest):
    return TokenCountResponse(
        input_tokens=_count_tokens(request.messages, request.system, request.tools)
    )


@router.get("/")
async def root(settings: Settings = Depends(get_settings)):
    return {
        "status": "ok",
        "model": settings.model,
        "reasoning_tag": settings.reasoning_tag_name,
    }


@router.get("/health")
async def health():
    return {"status": "healthy"}
