from fastapi import APIRouter, Depends, File, UploadFile

from config import FILE_MAX_BYTES
from core.errors import ValidationFailed
from core.realtime import RealtimeContext, get_realtime
from routers.dependencies import get_current_user_id

from .schemas import FileUploadResponse
from .service import upload_file as service_upload_file

router = APIRouter(prefix="/files", tags=["Files"])


@router.post("", response_model=FileUploadResponse)
async def upload_file(
    file: UploadFile = File(...),
    realtime: RealtimeContext = Depends(get_realtime),
    current_user_id: str = Depends(get_current_user_id),
):
    """
    Upload a message attachment (images: jpeg/png/gif/webp; documents:
    pdf/doc/docx; max 10MB). Send the returned url as a message's file_url.
    """
    # Read one byte past the limit so oversized uploads are rejected without buffering them whole.
    data = await file.read(FILE_MAX_BYTES + 1)
    if len(data) > FILE_MAX_BYTES:
        raise ValidationFailed(f"File exceeds {FILE_MAX_BYTES // (1024 * 1024)}MB limit")
    return await service_upload_file(
        realtime,
        current_user_id=current_user_id,
        file_name=file.filename or "upload",
        content_type=file.content_type,
        data=data,
    )
