"""High level orchestration for chat with streaming, memories, and documents."""

from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Sequence

from nemonic_retrieval import DocumentChunk, RetrievalEngine, chunks_for_sources

from .catalog import ModelCatalog, pricing_table
from .config import ChatConfig
from .context import ContextAssembler
from .errors import MissingCredential, NemonicError, TurnInProgressError
from .llm_client import (
    Aborted,
    CancellationToken,
    ChatLLMClient,
    Chunk,
    CompletionStream,
    StreamError,
    UsageFinal,
)
from .models import Memory, Message, ModelPricing, TokenUsage
from .storage import ChatStorage, KeyValueStore
from .usage import UsageAccountant

logger = logging.getLogger(__name__)


class TurnState(str, enum.Enum):
    SENT = "sent"
    STREAMING = "streaming"
    COMPLETED = "completed"
    STOPPED = "stopped"
    ERRORED = "errored"

    @property
    def terminal(self) -> bool:
        return self in (TurnState.COMPLETED, TurnState.STOPPED, TurnState.ERRORED)


@dataclass
class TurnResult:
    state: TurnState
    message: Message
    usage: Optional[TokenUsage] = None
    cost: float = 0.0
    error: Optional[NemonicError] = None


class ChatTurn:
    """One user turn in flight.

    Iterating the turn drives the completion stream and yields each content
    delta after it has been applied to the assistant message. ``cancel`` may
    be called at any point; partial content is kept and no error is shown.
    """

    def __init__(
        self,
        orchestrator: "ChatOrchestrator",
        placeholder: Message,
        model: str,
        api_key: str,
        cancel_token: CancellationToken,
    ) -> None:
        self.orchestrator = orchestrator
        self.placeholder = placeholder
        self.model = model
        self.api_key = api_key
        self.cancel_token = cancel_token
        self.stream: Optional[CompletionStream] = None
        self.state = TurnState.SENT
        self.usage: Optional[TokenUsage] = None
        self.cost = 0.0
        self.error: Optional[NemonicError] = None
        self.message = placeholder
        self._started = False

    def __iter__(self) -> Iterator[str]:
        if self._started:
            raise RuntimeError("ChatTurn can only be iterated once")
        self._started = True
        return self._drive()

    @property
    def started(self) -> bool:
        return self._started

    def cancel(self) -> None:
        self.cancel_token.cancel()

    def run(self) -> TurnResult:
        """Drain the turn and return its outcome."""
        for _ in self:
            pass
        return self.result

    @property
    def result(self) -> TurnResult:
        return TurnResult(state=self.state, message=self.message, usage=self.usage, cost=self.cost, error=self.error)

    def _drive(self) -> Iterator[str]:
        if self.state.terminal or self.stream is None:
            return
        self.state = TurnState.STREAMING
        events = iter(self.stream)
        try:
            for event in events:
                if isinstance(event, Chunk):
                    if self.orchestrator.apply_delta(self, event.text):
                        yield event.text
                elif isinstance(event, UsageFinal):
                    self.orchestrator.apply_usage(self, event.usage)
                    self.orchestrator.finish_turn(self, TurnState.COMPLETED)
                elif isinstance(event, Aborted):
                    self.orchestrator.finish_turn(self, TurnState.STOPPED)
                elif isinstance(event, StreamError):
                    self.orchestrator.apply_error(self, event.cause)
        finally:
            events.close()
            if not self.state.terminal:
                # The consumer walked away mid-stream.
                self.orchestrator.finish_turn(self, TurnState.STOPPED)


class ChatOrchestrator:
    """Core chat engine for a single conversation.

    Owns the in-memory message log and the session usage counters. At most
    one turn streams at a time.
    """

    def __init__(
        self,
        store: KeyValueStore,
        config: Optional[ChatConfig] = None,
        *,
        client: Optional[ChatLLMClient] = None,
        catalog: Optional[ModelCatalog] = None,
        retrieval: Optional[RetrievalEngine] = None,
        conversation_id: str = "default",
    ) -> None:
        self.config = config or ChatConfig()
        self.storage = ChatStorage(store)
        self.client = client or ChatLLMClient(self.config.llm)
        self.catalog = catalog or ModelCatalog(self.config.llm, session=self.client.session)
        self.retrieval = retrieval or RetrievalEngine(
            chunk_size=self.config.chunk_size, chunk_overlap=self.config.chunk_overlap
        )
        self.assembler = ContextAssembler(
            self.retrieval,
            history_window=self.config.history_window,
            top_k=self.config.context_top_k,
            max_prompt_tokens=self.config.max_prompt_tokens,
        )
        self.usage = UsageAccountant(store)
        self.conversation_id = conversation_id
        self.messages: List[Message] = self.storage.load_messages(conversation_id)
        self.session_tokens = 0
        self.session_cost = 0.0
        self._active_turn: Optional[ChatTurn] = None
        self._pricing: Dict[str, Optional[ModelPricing]] = {}
        self._pricing_fetched_at = 0.0

    @property
    def active_turn(self) -> Optional[ChatTurn]:
        return self._active_turn

    # -- turns ---------------------------------------------------------------

    def send(
        self,
        text: str,
        *,
        selected_memories: Optional[Sequence[str]] = None,
        selected_documents: Optional[Sequence[str]] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ChatTurn:
        """Start a fresh turn for ``text``.

        The user message and the assistant placeholder are appended, and the
        selected memories' use counts bumped, before this returns. Iterate
        the returned turn (or call ``run``) to stream the reply.
        """
        if not text or not text.strip():
            raise ValueError("message is required")
        self._ensure_idle()

        memory_ids = self._memory_selection(selected_memories)
        sources = self._document_selection(selected_documents)
        history = list(self.messages)
        self.messages.append(Message(role="user", content=text))
        memories = self._use_memories(memory_ids)
        logger.info("Sending message (%d memories, %d documents selected)", len(memories), len(sources))
        return self._start_turn(
            query=text,
            history=history,
            memories=memories,
            sources=sources,
            include_query=True,
            cancel_token=cancel_token,
        )

    def rerun(
        self,
        *,
        selected_memories: Optional[Sequence[str]] = None,
        selected_documents: Optional[Sequence[str]] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ChatTurn:
        """Regenerate the reply to the last user message.

        Everything after that message is dropped. Memory use counts are not
        bumped again since this is still the same user turn.
        """
        self._ensure_idle()
        index = next((i for i in range(len(self.messages) - 1, -1, -1) if self.messages[i].role == "user"), None)
        if index is None:
            raise ValueError("There is no user message to rerun")

        del self.messages[index + 1:]
        query = self.messages[index].content
        selected = set(self._memory_selection(selected_memories))
        memories = [memory for memory in self.storage.load_memories() if memory.id in selected]
        logger.info("Rerunning last user message")
        return self._start_turn(
            query=query,
            history=list(self.messages),
            memories=memories,
            sources=self._document_selection(selected_documents),
            include_query=False,
            cancel_token=cancel_token,
        )

    def stop(self) -> bool:
        """Cancel the active turn, if any."""
        turn = self._active_turn
        if turn is None:
            return False
        turn.cancel()
        if not turn.started:
            # Nothing is iterating the turn, so nothing would observe the cancellation.
            self.finish_turn(turn, TurnState.STOPPED)
        return True

    def release(self, turn: ChatTurn) -> None:
        """End ``turn`` if its consumer went away without draining it."""
        if turn.state.terminal:
            return
        turn.cancel()
        self.finish_turn(turn, TurnState.STOPPED)

    def _start_turn(
        self,
        *,
        query: str,
        history: List[Message],
        memories: List[Memory],
        sources: List[str],
        include_query: bool,
        cancel_token: Optional[CancellationToken],
    ) -> ChatTurn:
        placeholder = Message(role="assistant", content="")
        self.messages.append(placeholder)
        model = self.storage.load_model(self.config.default_model)
        api_key = self.storage.load_api_key()
        turn = ChatTurn(self, placeholder, model, api_key, cancel_token or CancellationToken())
        self._active_turn = turn

        try:
            if not api_key:
                raise MissingCredential()
            chunks = self._selected_chunks(sources)
            prompt = self.assembler.assemble(
                system_prompt=self.storage.load_system_prompt(),
                memories=memories,
                document_chunks=chunks,
                query=query,
                history=history,
                include_query=include_query,
            )
            turn.stream = self.client.stream_completion(
                prompt,
                api_key=api_key,
                model=model,
                sampling=self.storage.load_llm_settings(),
                cancel_token=turn.cancel_token,
            )
        except NemonicError as exc:
            self.apply_error(turn, exc)
            return turn
        except Exception as exc:
            logger.exception("Failed to prepare the completion request")
            self.apply_error(turn, NemonicError("Failed to prepare the request", str(exc)))
            return turn

        self._persist()
        return turn

    def _selected_chunks(self, sources: List[str]) -> List[DocumentChunk]:
        if not sources:
            return []
        try:
            return chunks_for_sources(self.storage.load_documents(), sources)
        except (AttributeError, KeyError, TypeError, ValueError):
            logger.exception("Error loading selected documents; continuing without excerpts")
            return []

    def _ensure_idle(self) -> None:
        if self._active_turn is not None and not self._active_turn.state.terminal:
            raise TurnInProgressError()

    # -- stream event handling ------------------------------------------------

    def _find(self, message: Message) -> Optional[int]:
        return next((i for i, item in enumerate(self.messages) if item is message), None)

    def apply_delta(self, turn: ChatTurn, text: str) -> bool:
        """Append streamed text to the turn's placeholder, if it still exists."""
        if self.config.pacing_delay > 0:
            time.sleep(self.config.pacing_delay)
        if self._find(turn.placeholder) is None:
            logger.debug("Dropping delta for deleted message %s", turn.placeholder.id)
            return False
        turn.placeholder.content += text
        return True

    def apply_usage(self, turn: ChatTurn, usage: TokenUsage) -> None:
        pricing = self._pricing_for(turn.model, turn.api_key)
        self.usage.record(
            turn.model,
            usage.total_tokens,
            usage.prompt_tokens,
            usage.completion_tokens,
            pricing,
        )
        turn.usage = usage
        turn.cost = UsageAccountant.request_cost(usage.prompt_tokens, usage.completion_tokens, pricing)
        self.session_tokens += usage.total_tokens
        self.session_cost += turn.cost

    def apply_error(self, turn: ChatTurn, error: NemonicError) -> None:
        """Show ``error`` in place of the reply and end the turn."""
        text = f"Error: {error.message or 'Failed to get response'}"
        index = self._find(turn.placeholder)
        if index is not None:
            turn.placeholder.content = text
        else:
            turn.message = Message(role="assistant", content=text)
            self.messages.append(turn.message)
        turn.error = error
        self.finish_turn(turn, TurnState.ERRORED)

    def finish_turn(self, turn: ChatTurn, state: TurnState) -> None:
        if turn.state.terminal:
            return
        turn.state = state
        if self._active_turn is turn:
            self._active_turn = None
        self._persist()
        logger.info("Turn finished: %s", state.value)

    def _pricing_for(self, model: str, api_key: str) -> Optional[ModelPricing]:
        """Pricing for ``model``, refreshed from the catalog once ``pricing_ttl`` has passed."""
        expired = time.monotonic() - self._pricing_fetched_at >= self.config.pricing_ttl
        if model not in self._pricing or expired:
            models = self.catalog.get_models(api_key or None)
            if models:
                self._pricing = pricing_table(models)
                self._pricing.setdefault(model, None)
                self._pricing_fetched_at = time.monotonic()
        return self._pricing.get(model)

    # -- message log ---------------------------------------------------------

    def history(self) -> List[Dict[str, Any]]:
        return [message.to_dict() for message in self.messages]

    def delete_message(self, message_id: str) -> bool:
        before = len(self.messages)
        self.messages = [message for message in self.messages if message.id != message_id]
        if len(self.messages) == before:
            return False
        self._persist()
        return True

    def delete_message_and_below(self, message_id: str) -> bool:
        index = next((i for i, message in enumerate(self.messages) if message.id == message_id), None)
        if index is None:
            return False
        self.messages = self.messages[:index]
        self._persist()
        return True

    def edit_message(self, message_id: str, content: str) -> Message:
        message = next((item for item in self.messages if item.id == message_id), None)
        if message is None:
            raise ValueError(f"No message found for id '{message_id}'")
        turn = self._active_turn
        if turn is not None and turn.placeholder is message:
            raise TurnInProgressError("Cannot edit a message while it is streaming")
        message.content = content
        self._persist()
        return message

    def reset_session_usage(self) -> None:
        self.session_tokens = 0
        self.session_cost = 0.0

    def _persist(self) -> None:
        self.storage.save_messages(self.conversation_id, self.messages)

    # -- memories and documents ----------------------------------------------

    def _memory_selection(self, selected: Optional[Sequence[str]]) -> List[str]:
        return list(selected) if selected is not None else self.storage.load_selected_memories()

    def _document_selection(self, selected: Optional[Sequence[str]]) -> List[str]:
        return list(selected) if selected is not None else self.storage.load_selected_documents()

    def _use_memories(self, memory_ids: List[str]) -> List[Memory]:
        if not memory_ids:
            return []
        wanted = set(memory_ids)
        updated = self.storage.increment_memory_use_count(wanted)
        return [memory for memory in updated if memory.id in wanted]

    def suggest_memories(self, text: str) -> List[Memory]:
        """Memories whose trigger words appear in ``text`` first, the rest after."""
        lowered = (text or "").lower()
        triggered: List[Memory] = []
        others: List[Memory] = []
        for memory in self.storage.load_memories():
            words = [word.strip().lower() for word in memory.trigger_words if word and word.strip()]
            if lowered and any(word in lowered for word in words):
                triggered.append(memory)
            else:
                others.append(memory)
        return triggered + others

    def add_document(self, source_name: str, text: str) -> List[DocumentChunk]:
        """Chunk an uploaded document and store it, replacing a same-named one."""
        chunks = self.retrieval.process_document(source_name, text)
        existing = self.storage.load_documents()
        stale = [chunk.id for chunk in existing if chunk.metadata.source_name == source_name]
        if stale:
            logger.info("Replacing %d existing chunk(s) of %s", len(stale), source_name)
            self.retrieval.forget(stale)
        kept = [chunk for chunk in existing if chunk.metadata.source_name != source_name]
        self.storage.save_documents(kept + chunks)
        return chunks

    def remove_document(self, source_name: str) -> int:
        """Delete every chunk of ``source_name``; returns how many were removed."""
        existing = self.storage.load_documents()
        removed = [chunk.id for chunk in existing if chunk.metadata.source_name == source_name]
        if not removed:
            return 0
        self.retrieval.forget(removed)
        self.storage.save_documents(chunk for chunk in existing if chunk.metadata.source_name != source_name)
        selection = self.storage.load_selected_documents()
        if source_name in selection:
            self.storage.save_selected_documents(name for name in selection if name != source_name)
        logger.info("Removed %d chunk(s) of %s", len(removed), source_name)
        return len(removed)

    def list_documents(self) -> List[str]:
        names: List[str] = []
        for chunk in self.storage.load_documents():
            if chunk.metadata.source_name not in names:
                names.append(chunk.metadata.source_name)
        return names
