"""Configuration objects for the chat engine."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict, Mapping, Optional


@dataclass
class ChatLLMConfig:
    """LLM connection details."""

    endpoint: str = "https://openrouter.ai/api/v1/chat/completions"
    models_endpoint: str = "https://openrouter.ai/api/v1/models"
    request_timeout: int = 60
    referer: str = "http://localhost"
    app_title: str = "Nemonic Chat"
    read_chunk_size: int = 1024


@dataclass
class SamplingParameters:
    """Optional sampling knobs forwarded to the completion endpoint."""

    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    top_p: Optional[float] = None
    frequency_penalty: Optional[float] = None
    presence_penalty: Optional[float] = None

    def to_payload(self) -> Dict[str, Any]:
        """Return only the parameters that were actually set."""
        return {key: value for key, value in asdict(self).items() if value is not None}

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "SamplingParameters":
        if not data:
            return cls()
        known = {f.name for f in fields(cls)}
        # Stored settings may use the camelCase spelling of the settings form.
        aliases = {
            "maxTokens": "max_tokens",
            "topP": "top_p",
            "frequencyPenalty": "frequency_penalty",
            "presencePenalty": "presence_penalty",
        }
        values: Dict[str, Any] = {}
        for key, value in data.items():
            name = aliases.get(key, key)
            if name in known:
                values[name] = value
        return cls(**values)


@dataclass
class ChatConfig:
    """Runtime controls for chat behaviour."""

    llm: ChatLLMConfig = field(default_factory=ChatLLMConfig)
    default_model: str = "openai/gpt-4-turbo"
    history_window: int = 10
    context_top_k: int = 5
    chunk_size: int = 1000
    chunk_overlap: int = 200
    max_prompt_tokens: int = 0
    pacing_delay: float = 0.0
    pricing_ttl: float = 3600.0
