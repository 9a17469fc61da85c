import asyncio
import json
import logging
import time
from typing import AsyncGenerator, List, Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from config import SSE_HEARTBEAT_SECONDS, SSE_MAX_MISSED_HEARTBEATS, SSE_RETRY_MS
from core.db import get_db
from core.events import SESSION_CLOSED, Envelope
from core.realtime import RealtimeContext, get_realtime
from routers.dependencies import get_current_user_id, get_stream_user_id

from .schemas import DisconnectResponse, SessionSubscriptionsResponse, SubscribeRequest
from .service import close_stream_session as service_close_stream_session
from .service import disconnect_session as service_disconnect_session
from .service import open_stream_session as service_open_stream_session
from .service import subscribe_session as service_subscribe_session
from .service import unsubscribe_session as service_unsubscribe_session

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/realtime", tags=["Realtime"])


def sse_format(data: dict, event: Optional[str] = None, id_: Optional[str] = None) -> bytes:
    """Build an SSE frame."""
    chunks = []
    if event:
        chunks.append(f"event: {event}\n")
    if id_:
        chunks.append(f"id: {id_}\n")
    payload = json.dumps(data, separators=(",", ":"))
    chunks.append(f"data: {payload}\n\n")
    return "".join(chunks).encode("utf-8")


def sse_retry(ms: int = 5000) -> bytes:
    """Generate SSE retry hint frame."""
    return f"retry: {ms}\n\n".encode("utf-8")


def envelope_frame(envelope: Envelope) -> bytes:
    event_id = None
    if envelope.sequence is not None:
        event_id = f"{envelope.conversation_id}:{envelope.sequence}"
    return sse_format(envelope.to_dict(), event=envelope.type, id_=event_id)


async def session_event_stream(request: Request, realtime: RealtimeContext, session) -> AsyncGenerator[bytes, None]:
    """
    Multiplex 2 sources:
    1) the session's outbox, fed by the fan-out router
    2) heartbeats to keep the connection alive
    """
    yield sse_retry(SSE_RETRY_MS)
    yield sse_format(
        {"session_id": session.session_id, "conversation_ids": sorted(session.conversation_ids)},
        event="session_opened",
    )

    heartbeat = asyncio.create_task(asyncio.sleep(SSE_HEARTBEAT_SECONDS))
    next_event = asyncio.create_task(session.outbox.get())
    last_heartbeat_time = time.monotonic()
    max_heartbeat_interval = SSE_HEARTBEAT_SECONDS * (SSE_MAX_MISSED_HEARTBEATS + 1)
    try:
        while True:
            if await request.is_disconnected():
                logger.debug(f"SSE client disconnected: session={session.session_id}")
                break
            if session.closed:
                yield sse_format({"type": SESSION_CLOSED}, event=SESSION_CLOSED)
                break
            if time.monotonic() - last_heartbeat_time > max_heartbeat_interval:
                logger.warning(f"Too many missed heartbeats for session {session.session_id}, closing stream")
                break

            done, _ = await asyncio.wait({heartbeat, next_event}, return_when=asyncio.FIRST_COMPLETED)

            if next_event in done:
                envelope = next_event.result()
                if envelope.type == SESSION_CLOSED:
                    yield sse_format({"type": SESSION_CLOSED}, event=SESSION_CLOSED)
                    break
                realtime.registry.touch(session.session_id)
                yield envelope_frame(envelope)
                next_event = asyncio.create_task(session.outbox.get())

            if heartbeat in done:
                last_heartbeat_time = time.monotonic()
                realtime.registry.touch(session.session_id)
                yield sse_format({"type": "heartbeat", "dropped": session.dropped})
                heartbeat = asyncio.create_task(asyncio.sleep(SSE_HEARTBEAT_SECONDS))
    finally:
        heartbeat.cancel()
        next_event.cancel()
        await service_close_stream_session(realtime, session_id=session.session_id)
        logger.info(f"SSE stream closed: session={session.session_id}")


@router.options("/stream")
async def stream_options():
    """CORS preflight handler for SSE endpoint."""
    return {"status": "ok"}


@router.get("/stream")
async def stream(
    request: Request,
    conversation_id: Optional[List[str]] = Query(None),
    db: Session = Depends(get_db),
    realtime: RealtimeContext = Depends(get_realtime),
    current_user_id: str = Depends(get_stream_user_id),
):
    """
    SSE endpoint for realtime delivery.
    Accepts token via Authorization header or ?token=... (EventSource).
    Subscribes to the given conversations, or to all of the user's
    conversations when none are given.
    """
    session = await service_open_stream_session(
        db, realtime, current_user_id=current_user_id, conversation_ids=conversation_id
    )
    return StreamingResponse(
        session_event_stream(request, realtime, session),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
            "X-Session-ID": session.session_id,
        },
    )


@router.post("/sessions/{session_id}/subscriptions", response_model=SessionSubscriptionsResponse)
async def subscribe(
    session_id: str,
    request: SubscribeRequest,
    db: Session = Depends(get_db),
    realtime: RealtimeContext = Depends(get_realtime),
    current_user_id: str = Depends(get_current_user_id),
):
    return await service_subscribe_session(
        db, realtime, current_user_id=current_user_id, session_id=session_id, conversation_id=request.conversation_id
    )


@router.delete("/sessions/{session_id}/subscriptions/{conversation_id}", response_model=SessionSubscriptionsResponse)
async def unsubscribe(
    session_id: str,
    conversation_id: str,
    realtime: RealtimeContext = Depends(get_realtime),
    current_user_id: str = Depends(get_current_user_id),
):
    return await service_unsubscribe_session(
        realtime, current_user_id=current_user_id, session_id=session_id, conversation_id=conversation_id
    )


@router.delete("/sessions/{session_id}", response_model=DisconnectResponse)
async def disconnect(
    session_id: str,
    realtime: RealtimeContext = Depends(get_realtime),
    current_user_id: str = Depends(get_current_user_id),
):
    """Close a session and drop all of its subscriptions at once."""
    return await service_disconnect_session(realtime, current_user_id=current_user_id, session_id=session_id)
