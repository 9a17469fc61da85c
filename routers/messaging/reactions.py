from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from core.db import get_db
from core.realtime import RealtimeContext, get_realtime
from routers.dependencies import get_current_user_id

router = APIRouter(prefix="/messages", tags=["Reactions"])

from .schemas import ReactionsResponse, ToggleReactionRequest, ToggleReactionResponse
from .service import (
    get_message_reactions as service_get_message_reactions,
    toggle_reaction as service_toggle_reaction,
)


@router.post("/{message_id}/reactions", response_model=ToggleReactionResponse)
async def toggle_reaction(
    message_id: str,
    request: ToggleReactionRequest,
    db: Session = Depends(get_db),
    realtime: RealtimeContext = Depends(get_realtime),
    current_user_id: str = Depends(get_current_user_id),
):
    """
    Add the reaction if the caller has not reacted with this emoji, remove it
    otherwise. Returns the aggregated reactions for the message.
    """
    return await service_toggle_reaction(
        db, realtime, current_user_id=current_user_id, message_id=message_id, emoji=request.emoji
    )


@router.get("/{message_id}/reactions", response_model=ReactionsResponse)
async def get_reactions(
    message_id: str,
    db: Session = Depends(get_db),
    current_user_id: str = Depends(get_current_user_id),
):
    return service_get_message_reactions(db, current_user_id=current_user_id, message_id=message_id)
