from .extractor import StreamReasoningExtractor, ExtractorState, Phase, find_overlap_start
from .sse import SSEBuilder, map_stop_reason
from .converter import convert_messages, convert_tools, convert_system

__all__ = [
    "StreamReasoningExtractor",
    "ExtractorState",
    "Phase",
    "find_overlap_start",
    "SSEBuilder",
    "map_stop_reason",
    "convert_messages",
    "convert_tools",
    "convert_system",
]
