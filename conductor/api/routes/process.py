"""Request processing routes.

Provides:
- POST /process - run one request and return the structured response
- POST /process/stream - the same, as Server-Sent Events
"""

import json
import logging
from typing import Any, Literal

from fastapi import APIRouter
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from conductor.agents.orchestrator import ThreadContext
from conductor.api.deps import OrchestratorDep
from conductor.core.exceptions import sanitize_error

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/process", tags=["process"])


class HistoryTurn(BaseModel):
    """A prior turn of the thread."""

    role: Literal["user", "assistant"]
    content: str


class ProcessRequest(BaseModel):
    """Request body for the process endpoints."""

    message: str = Field(..., min_length=1, description="User's message")
    thread_id: str | None = Field(None, description="Thread the message belongs to")
    history: list[HistoryTurn] = Field(
        default_factory=list, description="Prior turns, oldest first"
    )
    timeout: float | None = Field(None, gt=0, description="Request deadline in seconds")

    def context(self) -> ThreadContext:
        return ThreadContext(
            thread_id=self.thread_id,
            history=[turn.model_dump() for turn in self.history],
        )


def _sse(payload: dict[str, Any]) -> str:
    return f"data: {json.dumps(payload, default=str)}\n\n"


@router.post("")
async def process(request: ProcessRequest, orchestrator: OrchestratorDep) -> dict[str, Any]:
    """Process one message.

    Returns message, intent, tier, tokens_used, duration_ms, the state
    trace and, when capabilities ran, an execution_trace.
    """
    response = await orchestrator.process(
        request.message,
        request.context(),
        timeout=request.timeout,
    )
    return response.to_dict()


@router.post("/stream")
async def process_stream(request: ProcessRequest, orchestrator: OrchestratorDep) -> StreamingResponse:
    """Stream a response as Server-Sent Events.

    Emits SSE events:
    - {"type": "chunk", "text": "..."}
    - {"type": "progress", "progress": {...}}
    - {"type": "result", "response": {...}}
    - [DONE]
    """
    context = request.context()

    async def event_stream():
        try:
            async for event in orchestrator.process_stream(request.message, context):
                yield _sse(event.to_dict())
        except Exception as e:
            logger.exception(
                "Streaming request failed",
                extra={"thread_id": context.thread_id},
            )
            yield _sse({"type": "error", "content": sanitize_error(e)})
        yield "data: [DONE]\n\n"

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
