"""Local document chunking and similarity ranking."""

from .chunks import ChunkMetadata, DocumentChunk, ScoredChunk
from .engine import RetrievalEngine, RetrievalError, chunk_text, chunks_for_sources
from .fingerprint import DIMENSIONS, embed, similarity

__all__ = [
    "ChunkMetadata",
    "DocumentChunk",
    "ScoredChunk",
    "RetrievalEngine",
    "RetrievalError",
    "chunk_text",
    "chunks_for_sources",
    "DIMENSIONS",
    "embed",
    "similarity",
]
