"""Serve locally stored recordings and thumbnails under ``BLOB_BASE_URL``."""

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import FileResponse

from services.runtime import CoachRuntime, get_runtime
from services.storage import LocalBlobStorage

router = APIRouter()


@router.get("/{blob_path:path}")
async def read_blob(blob_path: str, runtime: CoachRuntime = Depends(get_runtime)):
    storage = runtime.storage
    if not isinstance(storage, LocalBlobStorage):
        raise HTTPException(status_code=404, detail="Blob not found")
    try:
        target = storage.local_path(blob_path)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail="Blob not found") from exc
    if not target.is_file():
        raise HTTPException(status_code=404, detail="Blob not found")
    return FileResponse(target)
