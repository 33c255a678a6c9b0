"""Chat engine for streaming conversations with memories and document context.

This package wires an OpenRouter-compatible chat-completions endpoint with
hand-authored memories, local document retrieval (see
:mod:`nemonic_retrieval`) and per-model usage accounting. The primary entry
point is ``nemonic_chat.service.ChatOrchestrator``;
``nemonic_chat.api.create_app`` exposes the same engine over HTTP.
"""

from .config import ChatConfig, ChatLLMConfig, SamplingParameters
from .llm_client import CancellationToken, ChatLLMClient
from .service import ChatOrchestrator, ChatTurn, TurnState
from .storage import ChatStorage, InMemoryStore
from .usage import UsageAccountant

__all__ = [
    "ChatConfig",
    "ChatLLMConfig",
    "SamplingParameters",
    "CancellationToken",
    "ChatLLMClient",
    "ChatOrchestrator",
    "ChatTurn",
    "TurnState",
    "ChatStorage",
    "InMemoryStore",
    "UsageAccountant",
]
