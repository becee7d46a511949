"""Chat turn, run, message and live event endpoints."""

import asyncio
import time
from collections.abc import AsyncIterator

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from wind_tavern.errors import AppError
from wind_tavern.events import ChatEvent, ChatEventBus
from wind_tavern.services import Services

from .deps import get_services
from .models import SubmitTurn

router = APIRouter()

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}
PING_INTERVAL = 15.0


def _require_chat(services: Services, chat_id: str) -> None:
    if services.storage.get_chat(chat_id) is None:
        raise AppError("CHAT_NOT_FOUND", "Chat not found")


@router.post("/chats/{chat_id}/turns", status_code=201)
async def submit_turn(chat_id: str, body: SubmitTurn, services: Services = Depends(get_services)):
    """Run one user turn and return the assistant reply."""
    return await services.orchestrator.submit_user_turn(chat_id, body.content)


@router.get("/chats/{chat_id}/runs")
async def list_runs(chat_id: str, services: Services = Depends(get_services)):
    """Run records for a chat, newest first."""
    return services.orchestrator.list_runs(chat_id)


@router.get("/chats/{chat_id}/messages")
async def list_messages(chat_id: str, services: Services = Depends(get_services)):
    """All messages of a chat in append order."""
    _require_chat(services, chat_id)
    return services.storage.list_messages(chat_id)


def format_sse(event: ChatEvent) -> str:
    return f"event: {event.type}\ndata: {event.model_dump_json()}\n\n"


async def stream_chat_events(
    events: ChatEventBus, chat_id: str, ping_interval: float = PING_INTERVAL
) -> AsyncIterator[str]:
    """Yield SSE frames for a chat until the client goes away."""
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue[ChatEvent] = asyncio.Queue()
    # Publishers may run outside this loop's thread.
    unsubscribe = events.subscribe(chat_id, lambda e: loop.call_soon_threadsafe(queue.put_nowait, e))
    try:
        yield f": connected to chat {chat_id}\n\n"
        while True:
            try:
                event = await asyncio.wait_for(queue.get(), timeout=ping_interval)
            except asyncio.TimeoutError:
                yield f": ping {int(time.time() * 1000)}\n\n"
                continue
            yield format_sse(event)
    finally:
        unsubscribe()


@router.get("/chats/{chat_id}/events")
async def chat_events(chat_id: str, services: Services = Depends(get_services)):
    """Server-sent events: `message` after each append, `run` after each run change."""
    _require_chat(services, chat_id)
    return StreamingResponse(
        stream_chat_events(services.events, chat_id),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )
