"""Chunk uploaded documents and rank their fragments against a query.

This module is the local replacement for a vector store: documents are
split into overlapping windows, each window gets a fingerprint from
:mod:`nemonic_retrieval.fingerprint` on first use, and queries are answered
with an exhaustive cosine ranking. Fingerprints live in a side table keyed by
chunk id so :class:`~nemonic_retrieval.chunks.DocumentChunk` values stay
immutable.
"""

from __future__ import annotations

import logging
import time
from typing import Dict, Iterable, List, Optional, Sequence

import numpy as np

from .chunks import ChunkMetadata, DocumentChunk, ScoredChunk
from .fingerprint import DIMENSIONS, embed, similarity

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 1000
DEFAULT_CHUNK_OVERLAP = 200


class RetrievalError(Exception):
    """Chunking or fingerprinting failed for a document."""


def chunk_text(text: str, size: int = DEFAULT_CHUNK_SIZE, overlap: int = DEFAULT_CHUNK_OVERLAP) -> List[str]:
    """Split ``text`` into windows of ``size`` characters sharing ``overlap``.

    Every window after the first starts ``overlap`` characters before the end
    of the previous one. The last window may be shorter than ``size``.
    """
    if size <= 0:
        raise ValueError("chunk size must be a positive integer")
    if overlap < 0 or overlap >= size:
        raise ValueError(f"chunk overlap must be in [0, {size}), got {overlap}")

    chunks: List[str] = []
    start = 0
    length = len(text)
    while start < length:
        end = min(start + size, length)
        chunks.append(text[start:end])
        if end == length:
            break
        start = end - overlap
    return chunks


class RetrievalEngine:
    """Rank document chunks by fingerprint similarity."""

    def __init__(
        self,
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        chunk_overlap: int = DEFAULT_CHUNK_OVERLAP,
        dimensions: int = DIMENSIONS,
    ) -> None:
        # Fail on a degenerate window configuration up front rather than at upload time.
        chunk_text("", chunk_size, chunk_overlap)
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self.dimensions = dimensions
        self._fingerprints: Dict[str, np.ndarray] = {}

    def process_document(self, source_name: str, text: str) -> List[DocumentChunk]:
        """Turn the raw text of an upload into chunks ready for storage."""
        if not source_name or not source_name.strip():
            raise ValueError("source_name must not be empty")
        if not isinstance(text, str):
            raise RetrievalError(f"Document {source_name!r} has no readable text")

        timestamp = time.time()
        millis = int(timestamp * 1000)
        pieces = chunk_text(text, self.chunk_size, self.chunk_overlap)
        chunks = [
            DocumentChunk(
                id=f"{source_name}-{index}-{millis}",
                content=piece,
                metadata=ChunkMetadata(source_name=source_name, chunk_index=index, timestamp=timestamp),
            )
            for index, piece in enumerate(pieces)
        ]
        logger.info("Split %s into %d chunk(s)", source_name, len(chunks))
        return chunks

    def fingerprint(self, chunk: DocumentChunk) -> np.ndarray:
        """Return the chunk's fingerprint, computing and caching it on first use."""
        if chunk.embedding is not None:
            return np.asarray(chunk.embedding, dtype=np.float64)
        cached = self._fingerprints.get(chunk.id)
        if cached is None:
            cached = embed(chunk.content, self.dimensions)
            self._fingerprints[chunk.id] = cached
        return cached

    def forget(self, chunk_ids: Iterable[str]) -> None:
        """Drop cached fingerprints, e.g. after a source document was removed."""
        for chunk_id in chunk_ids:
            self._fingerprints.pop(chunk_id, None)

    @property
    def cache_size(self) -> int:
        return len(self._fingerprints)

    def search(self, query: str, chunks: Sequence[DocumentChunk], top_k: int = 5) -> List[ScoredChunk]:
        """Score every chunk against ``query`` and return the best ``top_k``."""
        if top_k <= 0 or not chunks:
            return []

        start_time = time.perf_counter()
        query_vector = embed(query or "", self.dimensions)
        scored: List[ScoredChunk] = []
        for chunk in chunks:
            try:
                vector = self.fingerprint(chunk)
            except (AttributeError, TypeError, ValueError) as exc:
                raise RetrievalError(f"Failed to fingerprint chunk {getattr(chunk, 'id', '?')}") from exc
            scored.append(ScoredChunk(chunk=chunk, score=similarity(query_vector, vector)))

        # list.sort is stable, so equal scores keep their original order.
        scored.sort(key=lambda item: item.score, reverse=True)
        results = scored[:top_k]
        logger.debug(
            "Ranked %d chunk(s) in %.2f ms, returning %d",
            len(scored),
            (time.perf_counter() - start_time) * 1000,
            len(results),
        )
        return results

    def retrieve(self, query: str, chunks: Sequence[DocumentChunk], top_k: int = 5) -> List[DocumentChunk]:
        """Return up to ``top_k`` chunks ordered by descending similarity."""
        return [item.chunk for item in self.search(query, chunks, top_k=top_k)]


def chunks_for_sources(chunks: Iterable[DocumentChunk], sources: Optional[Iterable[str]]) -> List[DocumentChunk]:
    """Keep only the chunks whose source is in ``sources``."""
    wanted = set(sources or ())
    return [chunk for chunk in chunks if chunk.metadata.source_name in wanted]
