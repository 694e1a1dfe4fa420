"""Convenience exports for planwright generative-model clients."""

from .chat import ChatCompletionsClient
from .client import GenerativeClient, Message, ScriptedClient, StreamBuffer, collect_stream

__all__ = [
    "ChatCompletionsClient",
    "GenerativeClient",
    "Message",
    "ScriptedClient",
    "StreamBuffer",
    "collect_stream",
]
