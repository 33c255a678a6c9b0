"""Data classes for document fragments."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple


@dataclass(frozen=True)
class ChunkMetadata:
    source_name: str
    chunk_index: int
    timestamp: float = 0.0


@dataclass(frozen=True)
class DocumentChunk:
    """Bounded substring of an uploaded document.

    Chunks are immutable once created. ``embedding`` is only populated when a
    fingerprint was persisted alongside the chunk; otherwise the retrieval
    engine computes one lazily and keeps it in its own side table.
    """

    id: str
    content: str
    metadata: ChunkMetadata
    embedding: Optional[Tuple[float, ...]] = field(default=None, compare=False)

    @property
    def source_name(self) -> str:
        return self.metadata.source_name

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": self.id,
            "content": self.content,
            "metadata": {
                "sourceName": self.metadata.source_name,
                "chunkIndex": self.metadata.chunk_index,
                "timestamp": self.metadata.timestamp,
            },
        }
        if self.embedding is not None:
            payload["embedding"] = list(self.embedding)
        return payload

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DocumentChunk":
        meta = data.get("metadata") or {}
        # Older stores keyed the source by file name.
        source = meta.get("sourceName", meta.get("fileName", ""))
        embedding: Optional[List[float]] = data.get("embedding")
        return cls(
            id=str(data["id"]),
            content=data.get("content", ""),
            metadata=ChunkMetadata(
                source_name=source,
                chunk_index=int(meta.get("chunkIndex", 0)),
                timestamp=float(meta.get("timestamp", 0.0)),
            ),
            embedding=tuple(float(v) for v in embedding) if embedding else None,
        )


@dataclass
class ScoredChunk:
    chunk: DocumentChunk
    score: float
