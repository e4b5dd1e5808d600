"""Streaming decode pipeline and backends for Conduit."""

from conduit.llm.accumulator import ChunkAccumulator, GenerationStream, stream_chunks
from conduit.llm.base import GenerateConfig, GenerationBackend
from conduit.llm.client import StreamingClient, to_wire_messages
from conduit.llm.sse import SSEDecoder, StreamEvent, StreamEventType

__all__ = [
    "ChunkAccumulator",
    "GenerateConfig",
    "GenerationBackend",
    "GenerationStream",
    "SSEDecoder",
    "StreamEvent",
    "StreamEventType",
    "StreamingClient",
    "stream_chunks",
    "to_wire_messages",
]
