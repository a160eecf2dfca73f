"""Serves objects of the local storage backend behind signed URLs."""
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import FileResponse

from skydrive.dependencies import get_file_manager
from skydrive.errors import StoreWriteError
from skydrive.services.file_manager import FileManager
from skydrive.services.file_storage import LocalObjectStore

router = APIRouter(prefix="/storage", tags=["storage"])


@router.get("/{path:path}")
async def get_object(
    path: str,
    token: Optional[str] = Query(None),
    expires: Optional[int] = Query(None),
    manager: FileManager = Depends(get_file_manager),
):
    store = manager.object_store
    if not isinstance(store, LocalObjectStore):
        raise HTTPException(404, "Not found")
    if not store.verify(path, token, expires):
        raise HTTPException(403, "Invalid or expired link")
    try:
        target = store.resolve(path)
    except StoreWriteError:
        raise HTTPException(404, "Not found")
    if not target.is_file():
        raise HTTPException(404, "Not found")
    return FileResponse(target)
