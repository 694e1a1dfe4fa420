"""Client for OpenAI-compatible chat-completions endpoints."""

from __future__ import annotations

import json
import os
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence

from ..errors import GenerationError, GenerationTimeoutError, GenerationTransportError
from .client import GenerativeClient, Message

__all__ = ["ChatCompletionsClient"]


Transport = Callable[[Dict[str, Any]], str]
StreamTransport = Callable[[Dict[str, Any]], Iterable[str]]

_API_KEY_VARIABLES = ("PLANWRIGHT_API_KEY", "XAI_API_KEY", "OPENAI_API_KEY")


class ChatCompletionsClient(GenerativeClient):
    """Thin adapter around a ``/chat/completions`` API, optionally streamed."""

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        base_url: str = "https://api.x.ai/v1/chat/completions",
        model: str = "grok-code-fast-1",
        system_prompt: Optional[str] = None,
        temperature: float = 0.3,
        max_tokens: int = 32000,
        timeout: float = 120.0,
        transport: Optional[Transport] = None,
        stream_transport: Optional[StreamTransport] = None,
    ) -> None:
        super().__init__(model, system_prompt=system_prompt)
        self._api_key = api_key or next(
            (os.environ[name] for name in _API_KEY_VARIABLES if os.getenv(name)), None
        )
        self._base_url = base_url
        self._temperature = temperature
        self._max_tokens = max_tokens
        timeout_override = os.getenv("PLANWRIGHT_TIMEOUT")
        if timeout_override:
            try:
                parsed = float(timeout_override)
                if parsed > 0:
                    timeout = parsed
            except ValueError:
                pass
        self._timeout = timeout
        self._transport = transport or self._http_transport
        self._stream_transport = stream_transport or self._http_stream_transport

        if transport is None and not self._api_key:
            raise ValueError("An API key is required when using the default transport.")

    def _payload(self, messages: List[Message], options: Mapping[str, Any], *, stream: bool) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": options.get("model") or self._model,
            "messages": messages,
            "temperature": options.get("temperature", self._temperature),
            "max_tokens": options.get("max_tokens", self._max_tokens),
        }
        if stream:
            payload["stream"] = True
        return payload

    def stream(
        self,
        prompt: str,
        history: Sequence[Message] = (),
        options: Optional[Mapping[str, Any]] = None,
    ) -> Iterator[str]:
        options = dict(options or {})
        if not options.get("stream"):
            yield self._complete(self.build_messages(prompt, history), options)
            return
        payload = self._payload(self.build_messages(prompt, history), options, stream=True)
        try:
            lines = self._stream_transport(payload)
            for line in lines:
                chunk = self._delta_text(line)
                if chunk is None:
                    return
                if chunk:
                    yield chunk
        except GenerationError:
            raise
        except Exception as error:  # pragma: no cover - transport specific
            raise GenerationTransportError(f"Stream transport failed: {error}") from error

    def _complete(self, messages: List[Message], options: Dict[str, Any]) -> str:
        """Send the request over the configured transport."""
        payload = self._payload(messages, options, stream=False)
        try:
            raw_response = self._transport(payload)
        except GenerationError:
            raise
        except Exception as error:  # pragma: no cover - transport specific
            raise GenerationTransportError(f"Transport rejected the request: {error}") from error

        text = self._extract_content(raw_response)
        if text is None:
            raise GenerationTransportError("Chat completion response did not contain message content.")
        return text

    def _request(self, payload: Dict[str, Any]) -> Any:
        import urllib.request

        data = json.dumps(payload).encode("utf-8")
        return urllib.request.Request(
            self._base_url,
            data=data,
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {self._api_key}",
            },
            method="POST",
        )

    def _http_transport(self, payload: Dict[str, Any]) -> str:
        """Default HTTP transport for single-shot completions."""
        import urllib.error
        import urllib.request

        try:
            with urllib.request.urlopen(self._request(payload), timeout=self._timeout) as response:
                raw = response.read()
                status = getattr(response, "status", 200)
        except TimeoutError as error:  # pragma: no cover - network-dependent
            raise GenerationTimeoutError("Chat completion timed out.") from error
        except urllib.error.HTTPError as error:  # pragma: no cover - network-dependent
            message = error.read().decode("utf-8", errors="ignore")
            raise GenerationTransportError(f"HTTP {error.code}: {message}") from error
        except urllib.error.URLError as error:  # pragma: no cover - network-dependent
            raise GenerationTransportError(f"Failed to reach endpoint: {error.reason}") from error

        if status >= 400:
            raise GenerationTransportError(f"Unexpected HTTP status {status}")
        return raw.decode("utf-8")

    def _http_stream_transport(self, payload: Dict[str, Any]) -> Iterator[str]:  # pragma: no cover - network
        """Yield server-sent event lines from a streamed completion."""
        import urllib.error
        import urllib.request

        try:
            with urllib.request.urlopen(self._request(payload), timeout=self._timeout) as response:
                for raw_line in response:
                    line = raw_line.decode("utf-8", errors="ignore").strip()
                    if line:
                        yield line
        except TimeoutError as error:
            raise GenerationTimeoutError("Chat completion stream timed out.") from error
        except urllib.error.HTTPError as error:
            message = error.read().decode("utf-8", errors="ignore")
            raise GenerationTransportError(f"HTTP {error.code}: {message}") from error
        except urllib.error.URLError as error:
            raise GenerationTransportError(f"Failed to reach endpoint: {error.reason}") from error

    @staticmethod
    def _delta_text(line: str) -> Optional[str]:
        """Return the text carried by one SSE line, or None at the end signal."""
        if not line.startswith("data:"):
            return ""
        data = line[len("data:") :].strip()
        if data == "[DONE]":
            return None
        try:
            event = json.loads(data)
        except json.JSONDecodeError:
            return ""
        choices = event.get("choices") if isinstance(event, dict) else None
        if not choices or not isinstance(choices[0], dict):
            return ""
        delta = choices[0].get("delta") or {}
        content = delta.get("content") if isinstance(delta, dict) else None
        return content if isinstance(content, str) else ""

    @staticmethod
    def _extract_content(raw_response: str) -> Optional[str]:
        """Pull the assistant message out of a chat-completions response body."""
        if not raw_response:
            return None
        try:
            data = json.loads(raw_response)
        except json.JSONDecodeError:
            return raw_response

        if isinstance(data, dict):
            choices = data.get("choices")
            if isinstance(choices, list):
                for choice in choices:
                    if not isinstance(choice, dict):
                        continue
                    message = choice.get("message")
                    if isinstance(message, dict) and isinstance(message.get("content"), str):
                        return message["content"]
                    if isinstance(choice.get("text"), str):
                        return choice["text"]
            content = data.get("content")
            if isinstance(content, str):
                return content
            if "error" in data:
                return None
        return raw_response
