from typing import Any, Dict, Optional

TEXT_START = "text-start"
TEXT_DELTA = "text-delta"
TEXT_END = "text-end"
REASONING_DELTA = "reasoning-delta"
TOOL_CALL_START = "tool-call-start"
TOOL_CALL_DELTA = "tool-call-delta"
FINISH = "finish"
ERROR = "error"


def text_start(part_id: str) -> Dict[str, Any]:
    return {"type": TEXT_START, "id": part_id}


def text_delta(part_id: Optional[str], delta: str) -> Dict[str, Any]:
    return {"type": TEXT_DELTA, "id": part_id, "delta": delta}


def text_end(part_id: str) -> Dict[str, Any]:
    return {"type": TEXT_END, "id": part_id}


def reasoning_delta(part_id: Optional[str], delta: str) -> Dict[str, Any]:
    return {"type": REASONING_DELTA, "id": part_id, "delta": delta}


def tool_call_start(index: int, tool_id: str, name: str) -> Dict[str, Any]:
    return {"type": TOOL_CALL_START, "index": index, "id": tool_id, "name": name}


def tool_call_delta(index: int, arguments: str) -> Dict[str, Any]:
    return {"type": TOOL_CALL_DELTA, "index": index, "delta": arguments}


def finish(finish_reason: Optional[str], usage: Optional[Dict[str, int]] = None) -> Dict[str, Any]:
    return {"type": FINISH, "finish_reason": finish_reason, "usage": usage}


def error(message: str) -> Dict[str, Any]:
    return {"type": ERROR, "message": message}
