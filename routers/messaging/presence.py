from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from core.db import get_db
from core.realtime import RealtimeContext, get_realtime
from routers.dependencies import get_current_user_id

from .schemas import HeartbeatRequest, PresenceListResponse, PresenceOut, UpdateStatusRequest
from .service import get_presence as service_get_presence
from .service import heartbeat as service_heartbeat
from .service import update_status as service_update_status

router = APIRouter(prefix="/presence", tags=["Presence"])


@router.put("/status", response_model=PresenceOut)
async def update_status(
    request: UpdateStatusRequest,
    db: Session = Depends(get_db),
    realtime: RealtimeContext = Depends(get_realtime),
    current_user_id: str = Depends(get_current_user_id),
):
    """Set my status explicitly (online, away or offline)."""
    return await service_update_status(db, realtime, current_user_id=current_user_id, status=request.status)


@router.post("/heartbeat", response_model=PresenceOut)
async def heartbeat(
    request: HeartbeatRequest,
    db: Session = Depends(get_db),
    realtime: RealtimeContext = Depends(get_realtime),
    current_user_id: str = Depends(get_current_user_id),
):
    """Liveness signal, expected every PRESENCE_HEARTBEAT_SECONDS."""
    return await service_heartbeat(db, realtime, current_user_id=current_user_id, active=request.active)


@router.get("", response_model=PresenceListResponse)
async def get_presence_batch(
    user_ids: str = Query(..., description="Comma-separated user IDs"),
    db: Session = Depends(get_db),
    realtime: RealtimeContext = Depends(get_realtime),
    current_user_id: str = Depends(get_current_user_id),
):
    ids = [uid.strip() for uid in user_ids.split(",") if uid.strip()]
    return service_get_presence(db, realtime, user_ids=ids)


@router.get("/{user_id}", response_model=PresenceOut)
async def get_presence(
    user_id: str,
    db: Session = Depends(get_db),
    realtime: RealtimeContext = Depends(get_realtime),
    current_user_id: str = Depends(get_current_user_id),
):
    return service_get_presence(db, realtime, user_ids=[user_id])["presence"][0]
