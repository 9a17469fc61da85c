from fastapi import APIRouter

from config import PRESENCE_ENABLED

from . import conversations, files, messages, presence, reactions, realtime

router = APIRouter()
router.include_router(conversations.router)
router.include_router(messages.router)
router.include_router(reactions.router)
router.include_router(files.router)
router.include_router(realtime.router)
if PRESENCE_ENABLED:
    router.include_router(presence.router)
