"""
Tests for prompt assembly.
"""

import logging

import pytest

from nemonic_chat.context import ContextAssembler
from nemonic_chat.models import Memory, Message
from nemonic_retrieval import ChunkMetadata, DocumentChunk, RetrievalEngine, RetrievalError


def history_of(count):
    roles = ["user", "assistant"]
    return [Message(role=roles[i % 2], content=f"m{i + 1}") for i in range(count)]


def chunk(content, source="guide.md", index=0):
    return DocumentChunk(
        id=f"{source}-{index}",
        content=content,
        metadata=ChunkMetadata(source_name=source, chunk_index=index),
    )


class BrokenRetrieval:
    def retrieve(self, query, chunks, top_k=5):
        raise RetrievalError("boom")


@pytest.fixture
def assembler():
    return ContextAssembler(RetrievalEngine(), history_window=2)


class TestAssemble:
    def test_full_prompt_order(self, assembler):
        memories = [Memory(title="Pets", content="Cat named Tom")]
        chunks = [chunk("Tom likes tuna")]

        prompt = assembler.assemble(
            system_prompt="Be brief.",
            memories=memories,
            document_chunks=chunks,
            query="What does Tom eat?",
            history=history_of(7),
        )

        assert prompt == [
            {"role": "system", "content": "Be brief."},
            {"role": "system", "content": "Relevant memories:\nMemory: Pets\nCat named Tom"},
            {"role": "system", "content": "Relevant document excerpts:\n[From guide.md]: Tom likes tuna"},
            {"role": "assistant", "content": "m6"},
            {"role": "user", "content": "m7"},
            {"role": "user", "content": "What does Tom eat?"},
        ]

    def test_empty_parts_are_omitted(self, assembler):
        prompt = assembler.assemble(
            system_prompt="   ",
            memories=[],
            document_chunks=[],
            query="hi",
            history=[],
        )
        assert prompt == [{"role": "user", "content": "hi"}]

    def test_memories_are_separated_by_blank_lines(self, assembler):
        memories = [Memory(title="A", content="one"), Memory(title="B", content="two")]
        prompt = assembler.assemble(system_prompt="", memories=memories, document_chunks=[], query="q", history=[])
        assert prompt[0]["content"] == "Relevant memories:\nMemory: A\none\n\nMemory: B\ntwo"

    def test_excerpts_are_limited_to_top_k(self):
        assembler = ContextAssembler(RetrievalEngine(), top_k=2)
        chunks = [chunk(f"fragment number {i}", index=i) for i in range(5)]
        prompt = assembler.assemble(system_prompt="", memories=[], document_chunks=chunks, query="fragment", history=[])
        excerpt = prompt[0]["content"]
        assert excerpt.startswith("Relevant document excerpts:\n")
        assert excerpt.count("[From guide.md]:") == 2

    def test_excerpts_only_come_from_given_chunks(self, assembler):
        chunks = [chunk("selected text", source="chosen.txt")]
        prompt = assembler.assemble(system_prompt="", memories=[], document_chunks=chunks, query="text", history=[])
        assert "[From chosen.txt]: selected text" in prompt[0]["content"]
        assert "guide.md" not in prompt[0]["content"]

    def test_rerun_does_not_repeat_the_query(self, assembler):
        history = history_of(3)
        prompt = assembler.assemble(
            system_prompt="",
            memories=[],
            document_chunks=[],
            query="m3",
            history=history,
            include_query=False,
        )
        assert prompt == [{"role": "assistant", "content": "m2"}, {"role": "user", "content": "m3"}]

    @pytest.mark.parametrize("window", [0, -1])
    def test_non_positive_window_means_no_history(self, assembler, window):
        prompt = assembler.assemble(
            system_prompt="",
            memories=[],
            document_chunks=[],
            query="q",
            history=history_of(4),
            history_window=window,
        )
        assert prompt == [{"role": "user", "content": "q"}]

    def test_window_larger_than_history(self):
        assembler = ContextAssembler(RetrievalEngine(), history_window=10)
        prompt = assembler.assemble(system_prompt="", memories=[], document_chunks=[], query="q", history=history_of(3))
        assert [m["content"] for m in prompt] == ["m1", "m2", "m3", "q"]

    def test_retrieval_failure_degrades_to_no_excerpts(self, caplog):
        assembler = ContextAssembler(BrokenRetrieval())
        with caplog.at_level(logging.ERROR):
            prompt = assembler.assemble(
                system_prompt="S",
                memories=[],
                document_chunks=[chunk("x")],
                query="q",
                history=[],
            )
        assert prompt == [{"role": "system", "content": "S"}, {"role": "user", "content": "q"}]
        assert "Document retrieval failed" in caplog.text


class TestPromptBudget:
    def test_oldest_history_is_dropped_first(self):
        assembler = ContextAssembler(RetrievalEngine(), history_window=10, max_prompt_tokens=5)
        history = [Message(role="user", content="x" * 8) for _ in range(4)]
        prompt = assembler.assemble(system_prompt="", memories=[], document_chunks=[], query="q" * 4, history=history)
        # query costs 1, each history message 2: two messages fit.
        assert len(prompt) == 3
        assert prompt[-1] == {"role": "user", "content": "qqqq"}

    def test_system_and_query_are_never_dropped(self):
        assembler = ContextAssembler(RetrievalEngine(), max_prompt_tokens=1)
        prompt = assembler.assemble(
            system_prompt="s" * 100,
            memories=[],
            document_chunks=[],
            query="q" * 100,
            history=history_of(3),
        )
        assert prompt == [{"role": "system", "content": "s" * 100}, {"role": "user", "content": "q" * 100}]

    def test_zero_budget_keeps_everything(self):
        assembler = ContextAssembler(RetrievalEngine(), history_window=10)
        prompt = assembler.assemble(system_prompt="", memories=[], document_chunks=[], query="q", history=history_of(6))
        assert len(prompt) == 7
