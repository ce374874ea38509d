import asyncio
from typing import List, Optional

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import StreamingResponse

from Tethra.schemas.chat import ChatEvent, ChatRequest, ListedModel, StreamEnded, SubmitResponse
from Tethra.services.errors import ChatRejected

router = APIRouter()

KEEPALIVE_SECONDS = 15.0


def format_sse(event: ChatEvent) -> str:
    return f"event: {event.event}\ndata: {event.model_dump_json()}\n\n"


@router.post("/chat/stream", status_code=202, response_model=SubmitResponse)
async def chat_stream(payload: ChatRequest, request: Request):
    """Start streaming a reply; tokens arrive on GET /chat/events, not in this response."""
    orchestrator = request.app.state.orchestrator
    try:
        result = orchestrator.submit_chat(payload.conversation_id, payload.user_message, payload.model)
    except ChatRejected as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc))
    return SubmitResponse(accepted=result.accepted, conversation_id=result.conversation_id, message_id=result.message_id)


@router.get("/chat/events")
async def chat_events(request: Request, conversation_id: Optional[str] = None, until_end: bool = False):
    """Live chat events as SSE, optionally for one conversation and until its stream ends."""
    if until_end and not conversation_id:
        raise HTTPException(status_code=400, detail="until_end requires conversation_id")
    subscription = request.app.state.events.subscribe(conversation_id)

    async def generator():
        try:
            while True:
                if await request.is_disconnected():
                    break
                try:
                    event = await asyncio.wait_for(subscription.get(), timeout=KEEPALIVE_SECONDS)
                except asyncio.TimeoutError:
                    yield ": keep-alive\n\n"
                    continue
                yield format_sse(event)
                if until_end and isinstance(event, StreamEnded):
                    break
        finally:
            subscription.close()

    return StreamingResponse(
        generator(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


# Lists chat models for every provider that is configured (local models always listed)
@router.get("/chat/models", response_model=List[ListedModel])
async def chat_models(request: Request):
    return await request.app.state.catalog.list_chat_models()
