from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from config import MESSAGE_HISTORY_LIMIT
from core.db import get_db
from core.realtime import RealtimeContext, get_realtime
from routers.dependencies import get_current_user_id

router = APIRouter(tags=["Messages"])

from .schemas import (
    EditMessageRequest,
    MarkReadResponse,
    MessageListResponse,
    MessageOut,
    ReadReceiptsResponse,
    SendMessageRequest,
    ThreadCountResponse,
    ThreadMessagesResponse,
    ThreadSubscriptionResponse,
    TypingRequest,
    TypingResponse,
)
from .service import (
    delete_message as service_delete_message,
    edit_message as service_edit_message,
    get_message as service_get_message,
    get_thread_count as service_get_thread_count,
    get_thread_messages as service_get_thread_messages,
    list_messages as service_list_messages,
    mark_read as service_mark_read,
    get_read_receipts as service_get_read_receipts,
    send_message as service_send_message,
    send_thread_reply as service_send_thread_reply,
    send_typing as service_send_typing,
    set_thread_subscription as service_set_thread_subscription,
)


@router.post("/conversations/{conversation_id}/messages", response_model=MessageOut)
async def send_message(
    conversation_id: str,
    request: SendMessageRequest,
    db: Session = Depends(get_db),
    realtime: RealtimeContext = Depends(get_realtime),
    current_user_id: str = Depends(get_current_user_id),
):
    """
    Send a message (text, a file URL from POST /files, or both).
    Persists it with the conversation's next sequence number and fans it out
    to subscribed sessions.
    """
    return await service_send_message(
        db,
        realtime,
        current_user_id=current_user_id,
        conversation_id=conversation_id,
        content=request.content,
        file_url=request.file_url,
    )


@router.get("/conversations/{conversation_id}/messages", response_model=MessageListResponse)
async def list_messages(
    conversation_id: str,
    limit: int = Query(50, ge=1, le=MESSAGE_HISTORY_LIMIT),
    before_sequence: Optional[int] = Query(None, ge=1),
    include_thread_replies: bool = Query(False),
    db: Session = Depends(get_db),
    current_user_id: str = Depends(get_current_user_id),
):
    """Message history, oldest first. Deleted messages are omitted."""
    return service_list_messages(
        db,
        current_user_id=current_user_id,
        conversation_id=conversation_id,
        limit=limit,
        before_sequence=before_sequence,
        include_thread_replies=include_thread_replies,
    )


@router.post("/conversations/{conversation_id}/read", response_model=MarkReadResponse)
async def mark_read(
    conversation_id: str,
    db: Session = Depends(get_db),
    realtime: RealtimeContext = Depends(get_realtime),
    current_user_id: str = Depends(get_current_user_id),
):
    return await service_mark_read(db, realtime, current_user_id=current_user_id, conversation_id=conversation_id)


@router.get("/conversations/{conversation_id}/read-receipts", response_model=ReadReceiptsResponse)
async def get_read_receipts(
    conversation_id: str,
    message_ids: str = Query(..., description="Comma-separated message IDs"),
    db: Session = Depends(get_db),
    current_user_id: str = Depends(get_current_user_id),
):
    ids = [mid.strip() for mid in message_ids.split(",") if mid.strip()]
    return service_get_read_receipts(
        db, current_user_id=current_user_id, conversation_id=conversation_id, message_ids=ids
    )


@router.post("/conversations/{conversation_id}/typing", response_model=TypingResponse)
async def send_typing(
    conversation_id: str,
    request: TypingRequest,
    db: Session = Depends(get_db),
    realtime: RealtimeContext = Depends(get_realtime),
    current_user_id: str = Depends(get_current_user_id),
):
    """Relay a typing indicator; never stored, never echoed to the typist."""
    return await service_send_typing(
        db, realtime, current_user_id=current_user_id, conversation_id=conversation_id, is_typing=request.is_typing
    )


@router.get("/messages/{message_id}", response_model=MessageOut)
async def get_message(
    message_id: str,
    db: Session = Depends(get_db),
    current_user_id: str = Depends(get_current_user_id),
):
    """Direct lookup; deleted messages are returned with deleted_at set."""
    return service_get_message(db, current_user_id=current_user_id, message_id=message_id)


@router.patch("/messages/{message_id}", response_model=MessageOut)
async def edit_message(
    message_id: str,
    request: EditMessageRequest,
    db: Session = Depends(get_db),
    realtime: RealtimeContext = Depends(get_realtime),
    current_user_id: str = Depends(get_current_user_id),
):
    return await service_edit_message(
        db, realtime, current_user_id=current_user_id, message_id=message_id, content=request.content
    )


@router.delete("/messages/{message_id}", response_model=MessageOut)
async def delete_message(
    message_id: str,
    db: Session = Depends(get_db),
    realtime: RealtimeContext = Depends(get_realtime),
    current_user_id: str = Depends(get_current_user_id),
):
    """Soft delete (sender only)."""
    return await service_delete_message(db, realtime, current_user_id=current_user_id, message_id=message_id)


@router.get("/messages/{message_id}/thread", response_model=ThreadMessagesResponse)
async def get_thread_messages(
    message_id: str,
    limit: int = Query(50, ge=1, le=MESSAGE_HISTORY_LIMIT),
    db: Session = Depends(get_db),
    current_user_id: str = Depends(get_current_user_id),
):
    return service_get_thread_messages(
        db, current_user_id=current_user_id, parent_message_id=message_id, limit=limit
    )


@router.post("/messages/{message_id}/thread", response_model=MessageOut)
async def send_thread_reply(
    message_id: str,
    request: SendMessageRequest,
    db: Session = Depends(get_db),
    realtime: RealtimeContext = Depends(get_realtime),
    current_user_id: str = Depends(get_current_user_id),
):
    return await service_send_thread_reply(
        db,
        realtime,
        current_user_id=current_user_id,
        parent_message_id=message_id,
        content=request.content,
        file_url=request.file_url,
    )


@router.get("/messages/{message_id}/thread/count", response_model=ThreadCountResponse)
async def get_thread_count(
    message_id: str,
    db: Session = Depends(get_db),
    current_user_id: str = Depends(get_current_user_id),
):
    return service_get_thread_count(db, current_user_id=current_user_id, parent_message_id=message_id)


@router.post("/messages/{message_id}/thread/subscription", response_model=ThreadSubscriptionResponse)
async def subscribe_thread(
    message_id: str,
    db: Session = Depends(get_db),
    current_user_id: str = Depends(get_current_user_id),
):
    return service_set_thread_subscription(db, current_user_id=current_user_id, message_id=message_id, subscribed=True)


@router.delete("/messages/{message_id}/thread/subscription", response_model=ThreadSubscriptionResponse)
async def unsubscribe_thread(
    message_id: str,
    db: Session = Depends(get_db),
    current_user_id: str = Depends(get_current_user_id),
):
    return service_set_thread_subscription(db, current_user_id=current_user_id, message_id=message_id, subscribed=False)
