"""
Vidya API — Upload Routes

Stores a file in object storage and returns the durable URL a submission
should reference.
"""
from __future__ import annotations

from fastapi import APIRouter, Depends, File, Form, UploadFile

from app.core.identity import Actor, get_current_actor
from app.schemas.schemas import UploadResponse
from app.services.storage.blob_store import blob_store

router = APIRouter(prefix="/uploads", tags=["Uploads"])


def _file_size(upload: UploadFile) -> int:
    if upload.size:
        return upload.size
    pos = upload.file.tell()
    upload.file.seek(0, 2)
    size = upload.file.tell()
    upload.file.seek(pos)
    return size


@router.post("", response_model=UploadResponse)
async def upload_file(
    file: UploadFile = File(...),
    kind: str = Form("video"),
    actor: Actor = Depends(get_current_actor),
):
    stored = await blob_store.store(
        kind,
        file.filename or "",
        file.file,
        _file_size(file),
        actor.account_id,
        content_type=file.content_type,
    )
    return UploadResponse(url=stored.url, key=stored.key, size=stored.size, content_type=stored.content_type)
