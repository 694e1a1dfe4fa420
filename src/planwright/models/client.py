"""Client base class shared by all generative-model integrations."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Union

from ..errors import GenerationError

__all__ = [
    "GenerativeClient",
    "Message",
    "ScriptedClient",
    "StreamBuffer",
    "collect_stream",
]

LOGGER = logging.getLogger(__name__)

Message = Dict[str, str]


@dataclass(slots=True)
class StreamBuffer:
    """Assembled stream text; ``complete`` is False when the stream broke off."""

    text: str
    complete: bool = True
    error: Optional[str] = None
    chunks: int = 0


def collect_stream(chunks: Iterable[str]) -> StreamBuffer:
    """Assemble streamed chunks into one buffer.

    Exhausting the iterator is the end signal. If the stream raises after some
    text arrived, the partial buffer is returned and flagged incomplete; if it
    fails before any text arrived, the error propagates.
    """
    parts: list[str] = []
    try:
        for chunk in chunks:
            if chunk:
                parts.append(chunk)
    except GenerationError as error:
        if not parts:
            raise
        LOGGER.warning("Stream ended abnormally after %d chunk(s): %s", len(parts), error)
        return StreamBuffer(text="".join(parts), complete=False, error=str(error), chunks=len(parts))
    return StreamBuffer(text="".join(parts), chunks=len(parts))


class GenerativeClient:
    """Turns a prompt plus conversation history into model text.

    Subclasses implement :meth:`_complete` for single-shot transports and may
    override :meth:`stream` when the backend delivers incremental chunks.
    """

    def __init__(self, model: str, *, system_prompt: Optional[str] = None) -> None:
        self._model = model
        self._system_prompt = system_prompt

    @property
    def model(self) -> str:
        """Return the default model name configured for this client."""
        return self._model

    def build_messages(self, prompt: str, history: Sequence[Message] = ()) -> List[Message]:
        """Render the ordered role/content list sent to the backend."""
        messages: list[Message] = []
        if self._system_prompt and not any(item.get("role") == "system" for item in history):
            messages.append({"role": "system", "content": self._system_prompt})
        messages.extend({"role": str(item["role"]), "content": str(item["content"])} for item in history)
        messages.append({"role": "user", "content": prompt})
        return messages

    def generate(
        self,
        prompt: str,
        history: Sequence[Message] = (),
        options: Optional[Mapping[str, Any]] = None,
    ) -> str:
        """Return the fully assembled response text."""
        return self.generate_buffer(prompt, history, options).text

    def generate_buffer(
        self,
        prompt: str,
        history: Sequence[Message] = (),
        options: Optional[Mapping[str, Any]] = None,
    ) -> StreamBuffer:
        """Like :meth:`generate` but also reports whether the stream completed."""
        return collect_stream(self.stream(prompt, history, options))

    def stream(
        self,
        prompt: str,
        history: Sequence[Message] = (),
        options: Optional[Mapping[str, Any]] = None,
    ) -> Iterator[str]:
        """Yield response chunks; the default yields one chunk from :meth:`_complete`."""
        yield self._complete(self.build_messages(prompt, history), dict(options or {}))

    def _complete(self, messages: List[Message], options: Dict[str, Any]) -> str:
        """Perform the transport call. Subclasses must implement."""
        raise NotImplementedError("Subclasses must implement _complete().")


Script = Union[Sequence[str], Callable[[str, Sequence[Message]], str]]


@dataclass(slots=True)
class ScriptedCall:
    """One recorded call against a :class:`ScriptedClient`."""

    prompt: str
    history: List[Message] = field(default_factory=list)


class ScriptedClient(GenerativeClient):
    """Deterministic client that replays canned responses for offline runs and tests."""

    def __init__(self, responses: Script, *, repeat_last: bool = False, model: str = "scripted") -> None:
        super().__init__(model)
        self._responses = responses
        self._repeat_last = repeat_last
        self._index = 0
        self.calls: list[ScriptedCall] = []

    def stream(
        self,
        prompt: str,
        history: Sequence[Message] = (),
        options: Optional[Mapping[str, Any]] = None,
    ) -> Iterator[str]:
        self.calls.append(ScriptedCall(prompt=prompt, history=[dict(item) for item in history]))
        if callable(self._responses):
            yield self._responses(prompt, history)
            return
        if self._index >= len(self._responses):
            if not self._repeat_last or not self._responses:
                raise GenerationError("Scripted client has no responses left.")
            yield self._responses[-1]
            return
        response = self._responses[self._index]
        self._index += 1
        yield response
