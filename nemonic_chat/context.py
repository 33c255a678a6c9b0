"""Assemble the upstream message list for a turn."""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Sequence

from nemonic_retrieval import DocumentChunk, RetrievalEngine, RetrievalError

from .models import Memory, Message

logger = logging.getLogger(__name__)

Prompt = List[Dict[str, str]]


class ContextAssembler:
    """Interleave system prompt, memories, document excerpts and history.

    The order is fixed: system prompt, memories, document excerpts, the
    trailing history window, then the new user message.
    """

    def __init__(
        self,
        retrieval: RetrievalEngine,
        *,
        history_window: int = 10,
        top_k: int = 5,
        max_prompt_tokens: int = 0,
    ) -> None:
        self.retrieval = retrieval
        self.history_window = history_window
        self.top_k = top_k
        self.max_prompt_tokens = max_prompt_tokens

    def assemble(
        self,
        *,
        system_prompt: Optional[str],
        memories: Sequence[Memory],
        document_chunks: Sequence[DocumentChunk],
        query: str,
        history: Sequence[Message],
        history_window: Optional[int] = None,
        include_query: bool = True,
    ) -> Prompt:
        """Return role-tagged messages ready for the completion request.

        ``document_chunks`` must already be restricted to the selected
        documents. ``include_query`` is False for a rerun, where the user
        message is the last element of ``history``.
        """
        prompt: Prompt = []
        if system_prompt and system_prompt.strip():
            prompt.append({"role": "system", "content": system_prompt})

        memory_block = self._memory_block(memories)
        if memory_block:
            prompt.append({"role": "system", "content": memory_block})

        excerpt_block = self._excerpt_block(query, document_chunks)
        if excerpt_block:
            prompt.append({"role": "system", "content": excerpt_block})

        window = self.history_window if history_window is None else history_window
        recent = list(history[-window:]) if window > 0 else []
        history_part = [message.as_prompt() for message in recent]
        tail: Prompt = [{"role": "user", "content": query}] if include_query else []

        history_part = self._enforce_prompt_budget(prompt, history_part, tail)
        return prompt + history_part + tail

    @staticmethod
    def _memory_block(memories: Sequence[Memory]) -> str:
        if not memories:
            return ""
        body = "\n\n".join(f"Memory: {memory.title}\n{memory.content}" for memory in memories)
        return f"Relevant memories:\n{body}"

    def _excerpt_block(self, query: str, chunks: Sequence[DocumentChunk]) -> str:
        if not chunks:
            return ""
        try:
            relevant = self.retrieval.retrieve(query, chunks, top_k=self.top_k)
        except RetrievalError:
            logger.exception("Document retrieval failed; continuing without excerpts")
            return ""
        if not relevant:
            return ""
        body = "\n\n".join(f"[From {chunk.metadata.source_name}]: {chunk.content}" for chunk in relevant)
        return f"Relevant document excerpts:\n{body}"

    def _enforce_prompt_budget(self, head: Prompt, history: Prompt, tail: Prompt) -> Prompt:
        """Drop the oldest history messages until the prompt fits the token budget."""
        if self.max_prompt_tokens <= 0:
            return history

        fixed = sum(self._estimate_tokens(msg["content"]) for msg in head + tail)
        trimmed = list(history)
        while trimmed and fixed + sum(self._estimate_tokens(msg["content"]) for msg in trimmed) > self.max_prompt_tokens:
            trimmed.pop(0)
        if len(trimmed) < len(history):
            logger.info("Dropped %d history message(s) to fit the prompt budget", len(history) - len(trimmed))
        return trimmed

    @staticmethod
    def _estimate_tokens(text: str) -> int:
        """Very rough token estimation (4 chars ~ 1 token)."""
        return max(1, len(text) // 4)
