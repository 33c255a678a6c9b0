"""FastAPI adapter exposing one chat session to a presentation layer."""

from __future__ import annotations

import logging
from typing import List, Optional

from fastapi import FastAPI, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field, field_validator
from starlette.background import BackgroundTask

from .config import ChatConfig
from .errors import RetrievalError, TurnInProgressError
from .service import ChatOrchestrator, ChatTurn, TurnState
from .storage import InMemoryStore, KeyValueStore
from .utils import setup_logging

logger = logging.getLogger(__name__)


class ChatRequest(BaseModel):
    message: str = Field(..., description="User message to send to the model.")
    selected_memories: Optional[List[str]] = Field(
        None, description="Memory ids to attach; defaults to the stored selection."
    )
    selected_documents: Optional[List[str]] = Field(
        None, description="Document source names to retrieve from; defaults to the stored selection."
    )

    @field_validator("message")
    @classmethod
    def _not_empty(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("field must not be empty")
        return value


class RerunRequest(BaseModel):
    selected_memories: Optional[List[str]] = None
    selected_documents: Optional[List[str]] = None


class DocumentRequest(BaseModel):
    source_name: str
    text: str

    @field_validator("source_name")
    @classmethod
    def _not_empty(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("field must not be empty")
        return value


class MessagePayload(BaseModel):
    id: str
    role: str
    content: str
    timestamp: float


class HistoryResponse(BaseModel):
    conversation_id: str
    messages: List[MessagePayload] = Field(default_factory=list)
    streaming: bool = False


class UsageResponse(BaseModel):
    session_tokens: int
    session_cost: float
    total_tokens: int
    total_cost: float
    models: List[dict] = Field(default_factory=list)


def _stream(turn: ChatTurn):
    if turn.state.terminal:
        # Failed before anything was sent (e.g. no API key).
        yield turn.message.content
        return
    for delta in turn:
        yield delta
    if turn.state is TurnState.ERRORED:
        yield turn.message.content


def _streaming_response(orchestrator: ChatOrchestrator, turn: ChatTurn) -> StreamingResponse:
    # Frees the conversation even when the client disconnects before the body is read.
    return StreamingResponse(
        _stream(turn),
        media_type="text/plain",
        background=BackgroundTask(orchestrator.release, turn),
    )


def create_app(
    orchestrator: Optional[ChatOrchestrator] = None,
    *,
    store: Optional[KeyValueStore] = None,
    config: Optional[ChatConfig] = None,
    log_dir: Optional[str] = None,
) -> FastAPI:
    if log_dir:
        setup_logging(log_dir, logging.INFO)

    if orchestrator is None:
        orchestrator = ChatOrchestrator(store if store is not None else InMemoryStore(), config)

    app = FastAPI(title="Nemonic Chat", version="0.1.0")
    app.state.orchestrator = orchestrator

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    @app.post("/chat")
    def chat(request: ChatRequest):
        try:
            turn = app.state.orchestrator.send(
                request.message,
                selected_memories=request.selected_memories,
                selected_documents=request.selected_documents,
            )
        except TurnInProgressError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return _streaming_response(app.state.orchestrator, turn)

    @app.post("/chat/rerun")
    def rerun(request: RerunRequest):
        try:
            turn = app.state.orchestrator.rerun(
                selected_memories=request.selected_memories,
                selected_documents=request.selected_documents,
            )
        except TurnInProgressError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return _streaming_response(app.state.orchestrator, turn)

    @app.post("/chat/stop")
    async def stop() -> dict:
        return {"stopped": app.state.orchestrator.stop()}

    @app.get("/history", response_model=HistoryResponse)
    async def history():
        service: ChatOrchestrator = app.state.orchestrator
        return {
            "conversation_id": service.conversation_id,
            "messages": service.history(),
            "streaming": service.active_turn is not None,
        }

    @app.delete("/messages/{message_id}")
    async def delete_message(message_id: str, below: bool = False) -> dict:
        service: ChatOrchestrator = app.state.orchestrator
        deleted = service.delete_message_and_below(message_id) if below else service.delete_message(message_id)
        if not deleted:
            raise HTTPException(status_code=404, detail=f"No message found for id '{message_id}'")
        return {"deleted": message_id}

    @app.get("/usage", response_model=UsageResponse)
    async def usage():
        service: ChatOrchestrator = app.state.orchestrator
        totals = service.usage.totals()
        return {
            "session_tokens": service.session_tokens,
            "session_cost": service.session_cost,
            "total_tokens": totals.tokens,
            "total_cost": totals.cost,
            "models": [record.to_dict() for record in service.usage.records()],
        }

    @app.post("/documents")
    def add_document(request: DocumentRequest) -> dict:
        try:
            chunks = app.state.orchestrator.add_document(request.source_name, request.text)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except RetrievalError as exc:
            logger.exception("Document processing failed for %s", request.source_name)
            raise HTTPException(status_code=422, detail="Document could not be processed") from exc
        return {"source_name": request.source_name, "chunks": len(chunks)}

    @app.delete("/documents/{source_name}")
    async def remove_document(source_name: str) -> dict:
        removed = app.state.orchestrator.remove_document(source_name)
        if not removed:
            raise HTTPException(status_code=404, detail=f"No document named '{source_name}'")
        return {"source_name": source_name, "removed_chunks": removed}

    return app
