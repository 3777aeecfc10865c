"""
Push entry point for events emitted by the file storage layer.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request

from ...core.auth import UserContext, get_current_user
from ...schemas.notifications import FileUploadEventIn
from ...services.triggers import UploadEvent


router = APIRouter(prefix="/api/v1/events", tags=["events"])


@router.post("/file-uploaded", status_code=202)
def file_uploaded(
    payload: FileUploadEventIn,
    request: Request,
    user: UserContext = Depends(get_current_user),
) -> dict:
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        raise HTTPException(status_code=503, detail="Rule scheduler unavailable")
    event = UploadEvent(
        owner_id=user.owner_id,
        file_name=payload.file_name,
        file_size_bytes=payload.file_size_bytes,
        file_url=payload.file_url,
    )
    return {"fired": scheduler.handle_file_upload(event)}
