"""FastAPI router for question answering endpoints."""

from __future__ import annotations

from typing import AsyncIterator

from fastapi import APIRouter, Request
from fastapi.responses import StreamingResponse

from groundwork.rag.orchestrator import AskRequest, AskResponse, QueryOrchestrator

router = APIRouter()


@router.post("/ask", response_model=AskResponse)
async def ask(body: AskRequest, request: Request) -> AskResponse:
    """Answer a question with citations, or an "I don't know" response.

    Retrieval and provider failures are turned into error payloads by the
    handlers registered in ``create_app``.
    """
    orchestrator: QueryOrchestrator = request.app.state.orchestrator
    return await orchestrator.ask(body)


@router.post("/ask/stream")
async def ask_stream(body: AskRequest, request: Request) -> StreamingResponse:
    """Stream the answer as Server-Sent Events."""
    orchestrator: QueryOrchestrator = request.app.state.orchestrator

    async def _frames() -> AsyncIterator[str]:
        async for event in orchestrator.ask_stream(body):
            yield event.to_sse()

    return StreamingResponse(
        _frames(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
