"""Client for streaming chat-completions requests.

A streamed response is a sequence of newline-delimited ``data: <json>``
frames, optionally interleaved with ``:`` comment lines, terminated by
``data: [DONE]``. :class:`CompletionStream` decodes it into
:data:`StreamEvent` values:

* zero or more :class:`Chunk` content deltas, in wire order;
* then exactly one terminal outcome: :class:`UsageFinal` on completion,
  :class:`StreamError` on failure, or :class:`Aborted` on cancellation.
"""

from __future__ import annotations

import codecs
import enum
import json
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Union

import requests

from .config import ChatLLMConfig, SamplingParameters
from .errors import MissingCredential, NemonicError, ProtocolParseError, StreamCancelled, TransportError
from .models import TokenUsage

logger = logging.getLogger(__name__)

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"


@dataclass(frozen=True)
class Chunk:
    text: str


@dataclass(frozen=True)
class UsageFinal:
    usage: TokenUsage


@dataclass(frozen=True)
class StreamError:
    cause: NemonicError


@dataclass(frozen=True)
class Aborted:
    pass


StreamEvent = Union[Chunk, UsageFinal, StreamError, Aborted]


class StreamState(str, enum.Enum):
    IDLE = "idle"
    OPENING = "opening"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ABORTED = "aborted"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (StreamState.COMPLETED, StreamState.ABORTED, StreamState.FAILED)


class CancellationToken:
    """Cooperative cancellation signal held by the caller.

    ``cancel`` may be called from any thread. Registered callbacks run once,
    on the cancelling thread.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback()

    def add_callback(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback()

    def remove_callback(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise StreamCancelled()


class LineDecoder:
    """Split incoming bytes into complete lines, carrying partial ones over."""

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, data: Union[bytes, str]) -> List[str]:
        self._buffer += data if isinstance(data, str) else self._decoder.decode(data)
        *lines, self._buffer = self._buffer.split("\n")
        return [line.rstrip("\r") for line in lines]

    def flush(self) -> str:
        """Return whatever is left after the connection closed."""
        rest = (self._buffer + self._decoder.decode(b"", final=True)).rstrip("\r")
        self._buffer = ""
        return rest


class CompletionStream:
    """One in-flight streamed completion. Iterate it once to drive the exchange."""

    def __init__(
        self,
        session: requests.Session,
        config: ChatLLMConfig,
        payload: Dict[str, Any],
        headers: Dict[str, str],
        cancel_token: Optional[CancellationToken] = None,
    ) -> None:
        self.session = session
        self.config = config
        self.payload = payload
        self.headers = headers
        self.cancel_token = cancel_token or CancellationToken()
        self.state = StreamState.IDLE
        self.usage: Optional[TokenUsage] = None
        self.error: Optional[NemonicError] = None
        self.missing_usage = False
        self.parse_errors: List[ProtocolParseError] = []
        self._lock = threading.Lock()
        self._finalized = False
        self._started = False
        self._response: Optional[requests.Response] = None
        self._released = False

    def __iter__(self) -> Iterator[StreamEvent]:
        if self._started:
            raise RuntimeError("CompletionStream can only be iterated once")
        self._started = True
        return self._run()

    def cancel(self) -> None:
        self.cancel_token.cancel()

    @property
    def finalized(self) -> bool:
        return self._finalized

    def _finalize(self, state: StreamState) -> bool:
        """Move to a terminal state. Only the first caller wins."""
        with self._lock:
            if self._finalized:
                return False
            self._finalized = True
            self.state = state
            return True

    def _release(self) -> None:
        with self._lock:
            if self._released or self._response is None:
                return
            self._released = True
            response = self._response
        response.close()
        logger.debug("Released stream reader")

    def _run(self) -> Iterator[StreamEvent]:
        token = self.cancel_token
        token.add_callback(self._release)
        try:
            token.raise_if_cancelled()
            self.state = StreamState.OPENING
            response = self._open()
            self.state = StreamState.STREAMING

            latest_usage: Optional[TokenUsage] = None
            decoder = LineDecoder()
            seen_done = False
            for data in self._read(response):
                for line in decoder.feed(data):
                    payload = self._frame_payload(line)
                    if payload is None:
                        continue
                    if payload == DONE_SENTINEL:
                        seen_done = True
                        break
                    frame = self._parse_frame(payload)
                    if frame is None:
                        continue
                    delta = self._extract_delta(frame)
                    if delta:
                        token.raise_if_cancelled()
                        yield Chunk(delta)
                    usage = self._extract_usage(frame, payload)
                    if usage is not None:
                        latest_usage = usage
                if seen_done:
                    break

            if not seen_done:
                latest_usage = self._trailing_usage(decoder.flush()) or latest_usage

            token.raise_if_cancelled()
            if not self._finalize(StreamState.COMPLETED):
                return
            if latest_usage is None:
                logger.warning("No usage data found in streaming response")
                self.missing_usage = True
                latest_usage = TokenUsage.zero()
            self.usage = latest_usage
            yield UsageFinal(latest_usage)
        except StreamCancelled:
            if self._finalize(StreamState.ABORTED):
                logger.info("Completion stream cancelled")
                yield Aborted()
        except TransportError as exc:
            if token.cancelled:
                if self._finalize(StreamState.ABORTED):
                    logger.info("Completion stream cancelled")
                    yield Aborted()
            elif self._finalize(StreamState.FAILED):
                self.error = exc
                logger.error("Completion stream failed: %s", exc)
                yield StreamError(exc)
        except GeneratorExit:
            # The consumer stopped iterating; treat it like a cancellation.
            self._finalize(StreamState.ABORTED)
            raise
        finally:
            token.remove_callback(self._release)
            self._release()

    def _open(self) -> requests.Response:
        logger.info(
            "Streaming chat completion to %s using model %s", self.config.endpoint, self.payload.get("model")
        )
        try:
            response = self.session.post(
                self.config.endpoint,
                json=self.payload,
                headers=self.headers,
                stream=True,
                timeout=self.config.request_timeout,
            )
        except requests.RequestException as exc:
            if self.cancel_token.cancelled:
                raise StreamCancelled() from exc
            raise TransportError(f"Request to {self.config.endpoint} failed", str(exc)) from exc

        with self._lock:
            self._response = response
        # A cancel that arrived while the request was opening had nothing to release yet.
        self.cancel_token.raise_if_cancelled()

        if not response.ok:
            body = response.text
            raise TransportError(
                f"Completion API error: {body}",
                status_code=response.status_code,
                body=body,
            )
        return response

    def _read(self, response: requests.Response) -> Iterator[bytes]:
        iterator = response.iter_content(chunk_size=self.config.read_chunk_size)
        while True:
            self.cancel_token.raise_if_cancelled()
            try:
                data = next(iterator)
            except StopIteration:
                return
            except Exception as exc:
                if self.cancel_token.cancelled:
                    raise StreamCancelled() from exc
                raise TransportError("Connection lost while streaming", str(exc)) from exc
            self.cancel_token.raise_if_cancelled()
            if data:
                yield data

    @staticmethod
    def _frame_payload(line: str) -> Optional[str]:
        """Return the payload of a ``data:`` line, None for anything to ignore."""
        if not line.strip() or line.startswith(":"):
            return None
        if not line.startswith(DATA_PREFIX):
            return None
        payload = line[len(DATA_PREFIX):]
        return payload[1:] if payload.startswith(" ") else payload

    def _parse_frame(self, payload: str) -> Optional[Dict[str, Any]]:
        try:
            frame = json.loads(payload)
        except json.JSONDecodeError as exc:
            self._parse_failed(payload, str(exc))
            return None
        if not isinstance(frame, dict):
            self._parse_failed(payload, "frame is not a JSON object")
            return None
        return frame

    def _parse_failed(self, payload: str, reason: str) -> None:
        error = ProtocolParseError(f"Failed to parse stream frame: {reason}", frame=payload)
        self.parse_errors.append(error)
        logger.warning("Skipping malformed stream frame %r: %s", payload, reason)

    def _extract_usage(self, frame: Dict[str, Any], payload: str) -> Optional[TokenUsage]:
        usage = frame.get("usage")
        if not isinstance(usage, dict):
            return None
        try:
            return TokenUsage.from_wire(usage)
        except (TypeError, ValueError) as exc:
            self._parse_failed(payload, f"invalid usage object ({exc})")
            return None

    def _trailing_usage(self, rest: str) -> Optional[TokenUsage]:
        """Inspect an unterminated final frame for usage only."""
        payload = self._frame_payload(rest)
        if payload is None or payload == DONE_SENTINEL:
            return None
        try:
            frame = json.loads(payload)
        except json.JSONDecodeError:
            logger.debug("Ignoring unparsable trailing frame %r", payload)
            return None
        if not isinstance(frame, dict):
            return None
        return self._extract_usage(frame, payload)

    @staticmethod
    def _extract_delta(payload: Dict[str, Any]) -> str:
        choices = payload.get("choices") or []
        if not choices or not isinstance(choices[0], dict):
            return ""
        delta = choices[0].get("delta") or {}
        if not isinstance(delta, dict):
            return ""
        content = delta.get("content") or ""
        return str(content)


class ChatLLMClient:
    """Thin wrapper around a chat-completions endpoint with streaming support."""

    def __init__(self, config: Optional[ChatLLMConfig] = None, *, session: Optional[requests.Session] = None) -> None:
        self.config = config or ChatLLMConfig()
        self.session = session or requests.Session()

    def _headers(self, api_key: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {api_key}",
            "HTTP-Referer": self.config.referer,
            "X-Title": self.config.app_title,
        }

    @staticmethod
    def _payload(
        model: str,
        messages: Sequence[Dict[str, str]],
        sampling: Optional[SamplingParameters],
        stream: bool,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"model": model, "messages": list(messages)}
        if sampling is not None:
            payload.update(sampling.to_payload())
        payload["stream"] = stream
        return payload

    def stream_completion(
        self,
        messages: Sequence[Dict[str, str]],
        *,
        api_key: str,
        model: str,
        sampling: Optional[SamplingParameters] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> CompletionStream:
        """Prepare a streamed completion. Nothing is sent until it is iterated."""
        if not api_key:
            raise MissingCredential()
        return CompletionStream(
            self.session,
            self.config,
            self._payload(model, messages, sampling, stream=True),
            self._headers(api_key),
            cancel_token=cancel_token,
        )

    def complete(
        self,
        messages: Sequence[Dict[str, str]],
        *,
        api_key: str,
        model: str,
        sampling: Optional[SamplingParameters] = None,
    ) -> str:
        """Return a full completion (no streaming)."""
        if not api_key:
            raise MissingCredential()

        logger.debug("Requesting non-streaming completion for %d message(s)", len(messages))
        try:
            response = self.session.post(
                self.config.endpoint,
                json=self._payload(model, messages, sampling, stream=False),
                headers=self._headers(api_key),
                timeout=self.config.request_timeout,
            )
        except requests.RequestException as exc:
            raise TransportError(f"Request to {self.config.endpoint} failed", str(exc)) from exc
        if not response.ok:
            body = response.text
            raise TransportError(f"Completion API error: {body}", status_code=response.status_code, body=body)

        try:
            data = response.json()
        except ValueError as exc:
            raise TransportError("Completion API returned an unreadable response", str(exc)) from exc
        if not isinstance(data, dict):
            raise TransportError("Completion API returned an unexpected response", repr(data))
        choice = (data.get("choices") or [{}])[0]
        message = choice.get("message") or {}
        return message.get("content", "") or ""
