import json
from typing import Any, Dict, List, Optional, Union

from models import ContentBlock, Message, SystemBlock, Tool


def convert_messages(messages: List[Message], tag_name: str = "think") -> List[Dict[str, Any]]:
    result: List[Dict[str, Any]] = []
    for msg in messages:
        if isinstance(msg.content, str):
            result.append({"role": msg.role, "content": msg.content})
        elif msg.role == "assistant":
            result.append(_assistant_message(msg.content, tag_name))
        else:
            result.extend(_user_messages(msg.content))
    return result


def _assistant_message(blocks: List[ContentBlock], tag_name: str) -> Dict[str, Any]:
    reasoning = "\n".join(b.thinking or "" for b in blocks if b.type == "thinking")
    text = "".join(b.text or "" for b in blocks if b.type == "text")
    tool_calls = [_tool_call(b) for b in blocks if b.type == "tool_use"]

    # earlier reasoning goes back upstream inline, wrapped the way the model wrote it
    if reasoning:
        text = f"<{tag_name}>{reasoning}</{tag_name}>{text}"

    msg: Dict[str, Any] = {"role": "assistant", "content": text or ("" if tool_calls else " ")}
    if tool_calls:
        msg["tool_calls"] = tool_calls
    return msg


def _tool_call(block: ContentBlock) -> Dict[str, Any]:
    return {
        "id": block.id,
        "type": "function",
        "function": {"name": block.name, "arguments": json.dumps(block.input or {})},
    }


def _user_messages(blocks: List[ContentBlock]) -> List[Dict[str, Any]]:
    # tool results must directly follow the assistant turn that called them
    result = [
        {"role": "tool", "tool_call_id": b.tool_use_id, "content": _tool_result_text(b.content)}
        for b in blocks if b.type == "tool_result"
    ]
    text = "\n".join(b.text or "" for b in blocks if b.type == "text")
    if text:
        result.append({"role": "user", "content": text})
    return result


def _tool_result_text(content: Optional[Union[str, List[Any]]]) -> str:
    if not content:
        return ""
    if isinstance(content, str):
        return content
    return "\n".join(
        item.get("text", json.dumps(item)) if isinstance(item, dict) else str(item)
        for item in content
    )


def convert_tools(tools: List[Tool]) -> List[Dict[str, Any]]:
    return [
        {
            "type": "function",
            "function": {
                "name": tool.name,
                "description": tool.description or "",
                "parameters": tool.input_schema,
            },
        }
        for tool in tools
    ]


def convert_system(system: Union[str, List[SystemBlock]]) -> Optional[Dict[str, str]]:
    if isinstance(system, str):
        return {"role": "system", "content": system}
    text = "\n\n".join(block.text for block in system if block.type == "text").strip()
    return {"role": "system", "content": text} if text else None
