import functools
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, Iterable, Iterator, List, Optional, Tuple

from .parts import (
    REASONING_DELTA,
    TEXT_DELTA,
    TEXT_END,
    text_delta,
    text_end,
    text_start,
)

logger = logging.getLogger(__name__)

BACKTICK = "`"


class Phase(Enum):
    PENDING = "pending"
    REASONING = "reasoning"
    DONE = "done"


@dataclass
class ExtractorState:
    phase: Phase = Phase.PENDING
    full_text_length: int = 0
    # unresolved reasoning suffix plus one character of context before it
    reasoning_text: str = ""
    pending: str = ""
    first_reasoning: bool = True
    first_text: bool = True
    after_switch: bool = False
    last_id: Optional[str] = None


def find_overlap_start(
    text: str,
    needle: str,
    start: int = 0,
    escape: Optional[str] = BACKTICK,
) -> Optional[int]:
    """
    returns the index in text where needle starts, or where a suffix of text
    begins that is a prefix of needle (a tag still being streamed).

    a direct match wins. partial matches right after the escape character are
    ignored unless escape is None. returns None if nothing matches.
    """
    if not needle:
        return None

    direct = text.find(needle, start)
    if direct != -1:
        return direct

    # only suffixes shorter than needle can still grow into it
    lowest = max(start, len(text) - len(needle) + 1)
    candidate = None
    for i in range(len(text) - 1, lowest - 1, -1):
        if not needle.startswith(text[i:]):
            continue
        if escape is not None and i > 0 and text[i - 1] == escape:
            continue
        candidate = i
    return candidate


class StreamReasoningExtractor:
    """
    splits a stream of text-delta parts into two channels:

        <think>plan the answer</think>The answer is 42.

    becomes reasoning-delta "plan the answer" followed by text-delta
    "The answer is 42.", no matter how the upstream chunked the text.

    a tag wrapped in backticks (`</think>`) is treated as literal text.
    only the first tag pair of a stream is extracted.
    """

    def __init__(self, tag_name: str, separator: str = "\n"):
        if not tag_name:
            raise ValueError("tag_name must not be empty")
        self.tag_name = tag_name
        self.separator = separator
        self.opening_tag = f"<{tag_name}>"
        self.closing_tag = f"</{tag_name}>"

    def process_item(self, state: ExtractorState, item: Dict[str, Any]) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = []

        if item.get("type") != TEXT_DELTA:
            if item.get("type") == TEXT_END:
                self._flush_short_text(state, out)
            out.append(item)
            return out

        delta = item.get("delta") or ""
        if not delta:
            return out

        state.last_id = item.get("id")
        state.pending += delta
        state.full_text_length += len(delta)
        if state.phase is Phase.REASONING:
            state.reasoning_text += delta

        if state.phase is Phase.DONE:
            self._publish(state, item, state.pending, out)
            state.pending = ""
        elif state.phase is Phase.PENDING:
            self._handle_pending(state, item, out)
        else:
            self._handle_reasoning(state, item, out)
        return out

    def wrap_stream(
        self, do_stream: Callable[..., AsyncIterator[Dict[str, Any]]]
    ) -> Callable[..., AsyncIterator[Dict[str, Any]]]:
        @functools.wraps(do_stream)
        async def wrapped(*args, **kwargs) -> AsyncIterator[Dict[str, Any]]:
            state = ExtractorState()
            async for item in do_stream(*args, **kwargs):
                for part in self.process_item(state, item):
                    yield part
            for part in self.flush(state):
                yield part

        return wrapped

    def iter_items(self, items: Iterable[Dict[str, Any]]) -> Iterator[Dict[str, Any]]:
        state = ExtractorState()
        for item in items:
            yield from self.process_item(state, item)
        yield from self.flush(state)

    def extract(self, text: str, part_id: str = "0") -> Tuple[Optional[str], str]:
        reasoning = []
        content = []
        items = [text_start(part_id), text_delta(part_id, text), text_end(part_id)]
        for part in self.iter_items(items):
            if part["type"] == REASONING_DELTA:
                reasoning.append(part["delta"])
            elif part["type"] == TEXT_DELTA:
                content.append(part["delta"])
        return "".join(reasoning) or None, "".join(content)

    def _publish(
        self,
        state: ExtractorState,
        source: Dict[str, Any],
        content: str,
        out: List[Dict[str, Any]],
    ) -> None:
        if not content:
            return

        reasoning = state.phase is Phase.REASONING
        first = state.first_reasoning if reasoning else state.first_text
        if state.after_switch and not first:
            content = self.separator + content
        state.after_switch = False

        if reasoning:
            state.first_reasoning = False
        else:
            state.first_text = False

        out.append({
            **source,
            "type": REASONING_DELTA if reasoning else TEXT_DELTA,
            "delta": content,
        })

    def _handle_pending(self, state: ExtractorState, item: Dict[str, Any], out: List[Dict[str, Any]]) -> None:
        if state.full_text_length < len(self.opening_tag):
            return

        if not state.pending.startswith(self.opening_tag):
            self._publish(state, item, state.pending, out)
            state.pending = ""
            return

        state.phase = Phase.REASONING
        logger.debug(f"reasoning started: {self.opening_tag}")
        state.pending = state.pending[len(self.opening_tag):]
        state.reasoning_text = state.pending
        self._handle_reasoning(state, item, out)

    def _handle_reasoning(self, state: ExtractorState, item: Dict[str, Any], out: List[Dict[str, Any]]) -> None:
        text = state.reasoning_text
        base = len(text) - len(state.pending)
        start = base

        while True:
            index = find_overlap_start(text, self.closing_tag, start, escape=None)
            if index is None:
                self._publish(state, item, state.pending, out)
                state.pending = ""
                break

            end = index + len(self.closing_tag)
            if end >= len(text):
                # need the character after the tag to rule out a `</tag>` span
                self._publish(state, item, text[base:index], out)
                state.pending = text[index:]
                break

            if index > 0 and text[index - 1] == BACKTICK and text[end] == BACKTICK:
                start = index + 1
                continue

            cut = state.pending.find(self.closing_tag, index - base)
            if cut == -1:
                logger.warning("closing tag found in reasoning text but not in pending buffer, skipping delta")
                return

            self._publish(state, item, state.pending[:cut], out)
            state.pending = state.pending[cut + len(self.closing_tag):]
            self._close(state)
            self._publish(state, item, state.pending, out)
            state.pending = ""
            return

        state.reasoning_text = text[-(len(state.pending) + 1):]

    def _close(self, state: ExtractorState) -> None:
        state.phase = Phase.DONE
        state.after_switch = True
        state.reasoning_text = ""
        logger.debug(f"reasoning finished: {self.closing_tag}")

    def _flush_short_text(self, state: ExtractorState, out: List[Dict[str, Any]]) -> None:
        if state.phase is not Phase.PENDING or not state.pending:
            return
        if state.full_text_length < len(self.opening_tag):
            self._publish(state, {"id": state.last_id}, state.pending, out)
            state.pending = ""
            state.full_text_length = 0

    def flush(self, state: ExtractorState) -> List[Dict[str, Any]]:
        """
        resolves a closing tag candidate still held when the stream is
        exhausted. a complete tag closes the block, a partial one is
        published as reasoning.
        """
        out: List[Dict[str, Any]] = []
        if state.phase is not Phase.REASONING or not state.pending:
            return out

        # nothing follows, so a held closing tag cannot be a `</tag>` span
        if state.pending == self.closing_tag:
            state.pending = ""
            self._close(state)
        else:
            self._publish(state, {"id": state.last_id}, state.pending, out)
            state.pending = ""
            state.reasoning_text = state.reasoning_text[-1:]
        return out
