"""Per-turn streaming: session accumulators, chunk processing and the wire protocol."""

from parley.chat.processor import StreamChunkProcessor
from parley.chat.session import StreamSession
from parley.chat.wire import MessageBuilder

__all__ = ["MessageBuilder", "StreamChunkProcessor", "StreamSession"]
