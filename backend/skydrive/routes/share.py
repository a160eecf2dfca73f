"""Public share links. No session required."""
from fastapi import APIRouter, Depends, HTTPException

from skydrive.dependencies import get_file_manager
from skydrive.errors import StoreWriteError
from skydrive.schemas.file import SharedFileResponse
from skydrive.services.file_manager import FileManager

router = APIRouter(prefix="/api/share", tags=["share"])


@router.get("/{file_id}", response_model=SharedFileResponse)
async def get_shared_file(file_id: str, manager: FileManager = Depends(get_file_manager)):
    """Details and a download URL for a file its owner has shared."""
    try:
        shared = await manager.get_shared_file(file_id)
    except StoreWriteError:
        raise HTTPException(502, "Failed to load shared file")
    if shared is None:
        raise HTTPException(404, "This file is not shared or does not exist")
    item, download_url = shared
    return {
        "id": item.id,
        "file_name": item.file_name,
        "file_size": item.file_size,
        "mime_type": item.mime_type,
        "uploaded_at": item.uploaded_at,
        "download_url": download_url,
    }
