"""Records exchanged between the chat engine and its key-value store.

``to_dict``/``from_dict`` produce the JSON-compatible shape that is written to
the store, so existing stores written by the browser client stay readable.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from nemonic_retrieval import ChunkMetadata, DocumentChunk

ROLES = ("user", "assistant", "system")

__all__ = [
    "ROLES",
    "Message",
    "Memory",
    "ModelPricing",
    "TokenUsage",
    "UsageRecord",
    "ModelInfo",
    "ChunkMetadata",
    "DocumentChunk",
    "new_id",
]


def new_id() -> str:
    return uuid.uuid4().hex


@dataclass
class Message:
    role: str
    content: str = ""
    id: str = field(default_factory=new_id)
    timestamp: float = field(default_factory=time.time)

    def __post_init__(self) -> None:
        if self.role not in ROLES:
            raise ValueError(f"Unknown message role {self.role!r}")

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "role": self.role, "content": self.content, "timestamp": self.timestamp}

    def as_prompt(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Message":
        return cls(
            id=str(data["id"]),
            role=data["role"],
            content=data.get("content", ""),
            timestamp=float(data.get("timestamp", 0.0)),
        )


@dataclass
class Memory:
    """Hand-authored note that can be attached to a turn."""

    title: str
    content: str
    id: str = field(default_factory=new_id)
    timestamp: float = field(default_factory=time.time)
    use_count: int = 0
    tags: List[str] = field(default_factory=list)
    trigger_words: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "content": self.content,
            "timestamp": self.timestamp,
            "useCount": self.use_count,
            "tags": list(self.tags),
            "triggerWords": list(self.trigger_words),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Memory":
        return cls(
            id=str(data["id"]),
            title=data.get("title", ""),
            content=data.get("content", ""),
            timestamp=float(data.get("timestamp", 0.0)),
            use_count=int(data.get("useCount") or 0),
            tags=list(data.get("tags") or []),
            trigger_words=list(data.get("triggerWords") or []),
        )


@dataclass(frozen=True)
class ModelPricing:
    """Rates per million prompt / completion tokens."""

    prompt: float
    completion: float

    def to_dict(self) -> Dict[str, float]:
        return {"prompt": self.prompt, "completion": self.completion}

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> Optional["ModelPricing"]:
        if not data:
            return None
        return cls(prompt=float(data.get("prompt") or 0), completion=float(data.get("completion") or 0))


@dataclass(frozen=True)
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def zero(cls) -> "TokenUsage":
        return cls()

    @classmethod
    def from_wire(cls, data: Mapping[str, Any]) -> "TokenUsage":
        """Accept both ``prompt_tokens`` and ``promptTokens`` spellings."""

        def pick(snake: str, camel: str) -> int:
            value = data.get(snake, data.get(camel))
            return int(value or 0)

        return cls(
            prompt_tokens=pick("prompt_tokens", "promptTokens"),
            completion_tokens=pick("completion_tokens", "completionTokens"),
            total_tokens=pick("total_tokens", "totalTokens"),
        )


@dataclass
class UsageRecord:
    model_id: str
    request_count: int = 0
    total_tokens: int = 0
    total_prompt_tokens: int = 0
    total_completion_tokens: int = 0
    last_used: float = 0.0
    pricing: Optional[ModelPricing] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "modelId": self.model_id,
            "requestCount": self.request_count,
            "totalTokens": self.total_tokens,
            "totalPromptTokens": self.total_prompt_tokens,
            "totalCompletionTokens": self.total_completion_tokens,
            "lastUsed": self.last_used,
        }
        if self.pricing is not None:
            payload["pricing"] = self.pricing.to_dict()
        return payload

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "UsageRecord":
        return cls(
            model_id=data["modelId"],
            request_count=int(data.get("requestCount") or 0),
            total_tokens=int(data.get("totalTokens") or 0),
            total_prompt_tokens=int(data.get("totalPromptTokens") or 0),
            total_completion_tokens=int(data.get("totalCompletionTokens") or 0),
            last_used=float(data.get("lastUsed") or 0.0),
            pricing=ModelPricing.from_dict(data.get("pricing")),
        )


@dataclass
class ModelInfo:
    """Catalog entry for a model offered by the endpoint."""

    id: str
    name: str = ""
    pricing: Optional[ModelPricing] = None
    context_length: Optional[int] = None

    @classmethod
    def from_catalog(cls, data: Mapping[str, Any]) -> "ModelInfo":
        raw_pricing = data.get("pricing") or None
        pricing = None
        if raw_pricing:
            pricing = ModelPricing(
                prompt=float(raw_pricing.get("prompt") or 0),
                completion=float(raw_pricing.get("completion") or 0),
            )
        context_length = data.get("context_length")
        return cls(
            id=str(data["id"]),
            name=data.get("name") or str(data["id"]),
            pricing=pricing,
            context_length=int(context_length) if context_length is not None else None,
        )
