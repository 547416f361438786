from gosling.providers.anthropic import AnthropicProvider
from gosling.providers.base import Provider, ProviderResponse, StreamChunk, open_stream, stream_from_response

__all__ = [
    "AnthropicProvider",
    "Provider",
    "ProviderResponse",
    "StreamChunk",
    "open_stream",
    "stream_from_response",
]
