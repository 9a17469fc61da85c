from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from core.db import get_db
from core.realtime import RealtimeContext, get_realtime
from routers.dependencies import get_current_user_id

router = APIRouter(prefix="/conversations", tags=["Conversations"])

from .schemas import (
    AddMembersRequest,
    ConversationListResponse,
    ConversationOut,
    CreateDMRequest,
    CreateGroupRequest,
    DMConversationOut,
    MembersChangedResponse,
)
from .service import (
    add_members as service_add_members,
    attach_member_sessions as service_attach_member_sessions,
    create_group as service_create_group,
    create_or_get_dm as service_create_or_get_dm,
    get_conversation_details as service_get_conversation_details,
    leave_group as service_leave_group,
    list_conversations as service_list_conversations,
    remove_member as service_remove_member,
)


@router.post("/dm", response_model=DMConversationOut)
async def create_or_get_dm(
    request: CreateDMRequest,
    db: Session = Depends(get_db),
    realtime: RealtimeContext = Depends(get_realtime),
    current_user_id: str = Depends(get_current_user_id),
):
    """
    Find or create the direct conversation with another user.
    Idempotent: returns the existing DM if there is one.
    """
    conversation = service_create_or_get_dm(db, current_user_id=current_user_id, peer_user_id=request.peer_user_id)
    if conversation["created"]:
        await service_attach_member_sessions(
            db, realtime, conversation_id=conversation["id"], user_ids=[m["user_id"] for m in conversation["members"]]
        )
    return conversation


@router.post("/groups", response_model=ConversationOut)
async def create_group(
    request: CreateGroupRequest,
    db: Session = Depends(get_db),
    realtime: RealtimeContext = Depends(get_realtime),
    current_user_id: str = Depends(get_current_user_id),
):
    """Create a group; the creator becomes its admin. Members already online are subscribed at once."""
    conversation = service_create_group(
        db, current_user_id=current_user_id, title=request.title, member_ids=request.member_ids
    )
    await service_attach_member_sessions(
        db, realtime, conversation_id=conversation["id"], user_ids=[m["user_id"] for m in conversation["members"]]
    )
    return conversation


@router.get("", response_model=ConversationListResponse)
async def list_conversations(
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    current_user_id: str = Depends(get_current_user_id),
):
    """List the user's conversations, most recently active first."""
    return service_list_conversations(db, current_user_id=current_user_id, limit=limit, offset=offset)


@router.get("/{conversation_id}", response_model=ConversationOut)
async def get_conversation(
    conversation_id: str,
    db: Session = Depends(get_db),
    current_user_id: str = Depends(get_current_user_id),
):
    return service_get_conversation_details(db, current_user_id=current_user_id, conversation_id=conversation_id)


@router.post("/{conversation_id}/members", response_model=MembersChangedResponse)
async def add_members(
    conversation_id: str,
    request: AddMembersRequest,
    db: Session = Depends(get_db),
    realtime: RealtimeContext = Depends(get_realtime),
    current_user_id: str = Depends(get_current_user_id),
):
    """Add members to a group (admins only). Existing members are skipped."""
    return await service_add_members(
        db, realtime, current_user_id=current_user_id, conversation_id=conversation_id, user_ids=request.user_ids
    )


@router.delete("/{conversation_id}/members/{user_id}", response_model=MembersChangedResponse)
async def remove_member(
    conversation_id: str,
    user_id: str,
    db: Session = Depends(get_db),
    realtime: RealtimeContext = Depends(get_realtime),
    current_user_id: str = Depends(get_current_user_id),
):
    """Remove a member (admins only). Removing yourself is the same as leaving."""
    return await service_remove_member(
        db, realtime, current_user_id=current_user_id, conversation_id=conversation_id, user_id=user_id
    )


@router.post("/{conversation_id}/leave", response_model=MembersChangedResponse)
async def leave_group(
    conversation_id: str,
    db: Session = Depends(get_db),
    realtime: RealtimeContext = Depends(get_realtime),
    current_user_id: str = Depends(get_current_user_id),
):
    """
    Leave a group. If the last admin leaves, the longest-standing member
    is promoted to admin.
    """
    return await service_leave_group(db, realtime, current_user_id=current_user_id, conversation_id=conversation_id)
