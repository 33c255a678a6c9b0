"""Typed access to the key-value store that persists chat state.

The engine never owns persistence. It is handed any object exposing
``get(key)`` / ``set(key, value)`` (a browser-style local storage, a JSON
file, a Redis wrapper...) and reads or writes JSON-compatible values through
:class:`ChatStorage`.
"""

from __future__ import annotations

import copy
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, TypeVar

from .config import SamplingParameters
from .models import DocumentChunk, Memory, Message

logger = logging.getLogger(__name__)

T = TypeVar("T")

MESSAGES_KEY = "nemonic_messages"
MEMORIES_KEY = "nemonic_memories"
DOCUMENTS_KEY = "nemonic_documents"
API_KEY_KEY = "nemonic_api_key"
MODEL_KEY = "nemonic_model"
SELECTED_MEMORIES_KEY = "nemonic_selected_memories"
SELECTED_DOCUMENTS_KEY = "nemonic_selected_documents"
SYSTEM_PROMPT_KEY = "nemonic_system_prompt"
LLM_SETTINGS_KEY = "nemonic_llm_settings"
MODEL_USAGE_KEY = "nemonic_model_usage"

DEFAULT_MODEL = "openai/gpt-4-turbo"


class KeyValueStore(Protocol):
    def get(self, key: str) -> Any: ...

    def set(self, key: str, value: Any) -> None: ...


class InMemoryStore:
    """Dictionary backed store. Values are deep-copied on the way in and out."""

    def __init__(self, initial: Optional[Dict[str, Any]] = None) -> None:
        self._data: Dict[str, Any] = copy.deepcopy(initial) if initial else {}

    def get(self, key: str) -> Any:
        return copy.deepcopy(self._data.get(key))

    def set(self, key: str, value: Any) -> None:
        self._data[key] = copy.deepcopy(value)

    def __contains__(self, key: str) -> bool:
        return key in self._data


class ChatStorage:
    """Load and save chat records through a :class:`KeyValueStore`."""

    def __init__(self, store: KeyValueStore) -> None:
        self.store = store

    def _load_list(self, key: str, parse: Callable[[Any], T]) -> List[T]:
        raw = self.store.get(key)
        if not raw:
            return []
        try:
            return [parse(item) for item in raw]
        except (AttributeError, KeyError, TypeError, ValueError):
            logger.exception("Error loading %s; treating it as empty", key)
            return []

    # Messages are stored per conversation.
    def load_messages(self, conversation_id: str) -> List[Message]:
        return self._load_list(f"{MESSAGES_KEY}:{conversation_id}", Message.from_dict)

    def save_messages(self, conversation_id: str, messages: Iterable[Message]) -> None:
        self.store.set(f"{MESSAGES_KEY}:{conversation_id}", [msg.to_dict() for msg in messages])

    def load_memories(self) -> List[Memory]:
        return self._load_list(MEMORIES_KEY, Memory.from_dict)

    def save_memories(self, memories: Iterable[Memory]) -> None:
        self.store.set(MEMORIES_KEY, [memory.to_dict() for memory in memories])

    def increment_memory_use_count(self, memory_ids: Iterable[str]) -> List[Memory]:
        """Bump ``use_count`` once for every memory id given; returns the updated list."""
        wanted = set(memory_ids)
        memories = self.load_memories()
        for memory in memories:
            if memory.id in wanted:
                memory.use_count += 1
        if wanted:
            self.save_memories(memories)
        return memories

    def load_documents(self) -> List[DocumentChunk]:
        return self._load_list(DOCUMENTS_KEY, DocumentChunk.from_dict)

    def save_documents(self, chunks: Iterable[DocumentChunk]) -> None:
        self.store.set(DOCUMENTS_KEY, [chunk.to_dict() for chunk in chunks])

    def load_api_key(self) -> str:
        return self.store.get(API_KEY_KEY) or ""

    def save_api_key(self, api_key: str) -> None:
        self.store.set(API_KEY_KEY, api_key)

    def load_model(self, default: str = DEFAULT_MODEL) -> str:
        return self.store.get(MODEL_KEY) or default

    def save_model(self, model_id: str) -> None:
        self.store.set(MODEL_KEY, model_id)

    def load_system_prompt(self) -> str:
        return self.store.get(SYSTEM_PROMPT_KEY) or ""

    def save_system_prompt(self, prompt: str) -> None:
        self.store.set(SYSTEM_PROMPT_KEY, prompt)

    def load_llm_settings(self) -> SamplingParameters:
        raw = self.store.get(LLM_SETTINGS_KEY)
        try:
            return SamplingParameters.from_dict(raw)
        except (AttributeError, TypeError):
            logger.exception("Error loading LLM settings; using defaults")
            return SamplingParameters()

    def save_llm_settings(self, settings: SamplingParameters) -> None:
        self.store.set(LLM_SETTINGS_KEY, settings.to_payload())

    def load_selected_memories(self) -> List[str]:
        return list(self.store.get(SELECTED_MEMORIES_KEY) or [])

    def save_selected_memories(self, ids: Iterable[str]) -> None:
        self.store.set(SELECTED_MEMORIES_KEY, list(ids))

    def load_selected_documents(self) -> List[str]:
        return list(self.store.get(SELECTED_DOCUMENTS_KEY) or [])

    def save_selected_documents(self, source_names: Iterable[str]) -> None:
        self.store.set(SELECTED_DOCUMENTS_KEY, list(source_names))
