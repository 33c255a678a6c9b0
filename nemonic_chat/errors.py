"""Exception hierarchy for the chat engine.

Every error carries a human readable ``message`` (what ends up in the
assistant bubble when a turn fails), optional ``details`` and free-form
debugging ``context``.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from nemonic_retrieval import RetrievalError

__all__ = [
    "NemonicError",
    "TransportError",
    "ProtocolParseError",
    "MissingCredential",
    "StreamCancelled",
    "RetrievalError",
    "TurnInProgressError",
]


class NemonicError(Exception):
    """Base class for all chat engine errors."""

    def __init__(self, message: str, details: Optional[str] = None, **context: Any) -> None:
        self.message = message
        self.details = details
        self.context: Optional[Dict[str, Any]] = context or None
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} - {self.details}"
        return self.message

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": type(self).__name__,
            "message": self.message,
            "details": self.details,
            "context": self.context,
        }


class TransportError(NemonicError):
    """Network or HTTP failure before or during streaming."""

    def __init__(
        self,
        message: str,
        details: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        body: Optional[str] = None,
        **context: Any,
    ) -> None:
        super().__init__(message, details, **context)
        self.status_code = status_code
        self.body = body

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload["status_code"] = self.status_code
        payload["body"] = self.body
        return payload


class ProtocolParseError(NemonicError):
    """A single malformed stream frame. Recovered locally, never fatal."""

    def __init__(self, message: str, frame: str = "", **context: Any) -> None:
        super().__init__(message, **context)
        self.frame = frame


class MissingCredential(NemonicError):
    """No API key configured; raised before any request is opened."""

    def __init__(self, message: str = "API key not set. Please configure it in settings.", **context: Any) -> None:
        super().__init__(message, **context)


class StreamCancelled(NemonicError):
    """User initiated cancellation. Not surfaced as an error."""

    def __init__(self, message: str = "Stream cancelled", **context: Any) -> None:
        super().__init__(message, **context)


class TurnInProgressError(NemonicError):
    """A send or rerun was requested while another turn is still streaming."""

    def __init__(self, message: str = "A response is already streaming for this conversation", **context: Any) -> None:
        super().__init__(message, **context)
