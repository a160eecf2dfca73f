"""Files API - listing, uploads, trash, sharing."""
import hashlib
import logging
from pathlib import Path

import aiofiles.os
import aiofiles.tempfile
from fastapi import APIRouter, Depends, HTTPException, Query, UploadFile, File as FastAPIFile

from skydrive.dependencies import get_file_manager, require_session
from skydrive.schemas.file import FileItem, FileListResponse, FileRename, SignedUrlResponse, StorageUsage
from skydrive.schemas.upload import NotificationResponse, UploadListResponse, UploadTaskResponse
from skydrive.services.file_manager import FileManager
from skydrive.services.uploads.models import LocalFile

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["files"], dependencies=[Depends(require_session)])

SPOOL_CHUNK_SIZE = 1024 * 1024


def _get_or_404(manager: FileManager, file_id: str) -> FileItem:
    file = manager.files.get(file_id)
    if file is None:
        raise HTTPException(status_code=404, detail="File not found")
    return file


async def _to_local_file(upload: UploadFile, spool_dir: Path, threshold: int) -> LocalFile:
    """Small uploads are kept in memory. Anything larger, or of unknown size, is streamed to disk."""
    name = upload.filename or "unnamed"
    if upload.size is not None and upload.size <= threshold:
        return LocalFile.from_bytes(name, await upload.read(), upload.content_type)

    await aiofiles.os.makedirs(spool_dir, exist_ok=True)
    digest = hashlib.sha256()
    async with aiofiles.tempfile.NamedTemporaryFile("wb", dir=spool_dir, delete=False) as out:
        spooled = Path(out.name)
        try:
            while True:
                chunk = await upload.read(SPOOL_CHUNK_SIZE)
                if not chunk:
                    break
                digest.update(chunk)
                await out.write(chunk)
        except Exception:
            await aiofiles.os.remove(spooled)
            raise
    return LocalFile.from_path(spooled, upload.content_type, name=name, digest=digest.hexdigest(), temporary=True)


@router.get("/files", response_model=FileListResponse)
async def list_files(
    trashed: bool = Query(False),
    manager: FileManager = Depends(get_file_manager),
):
    """Cached file list. Trashed files only show up with `trashed=true`."""
    snapshot = manager.files.snapshot
    return {
        "version": snapshot.version,
        "files": [f for f in snapshot.items if f.is_trashed == trashed],
    }


@router.post("/files/sync", response_model=FileListResponse)
async def sync_files(manager: FileManager = Depends(get_file_manager)):
    """Reload the list from the metadata store."""
    if not await manager.refresh_files():
        raise HTTPException(502, "Failed to load files")
    snapshot = manager.files.snapshot
    return {"version": snapshot.version, "files": [f for f in snapshot.items if not f.is_trashed]}


@router.post("/files/upload", response_model=UploadListResponse, status_code=202)
async def upload_files(
    files: list[UploadFile] = FastAPIFile(...),
    manager: FileManager = Depends(get_file_manager),
):
    """Start uploading a batch. Progress is polled from /api/uploads."""
    spool_dir = Path(manager.settings.UPLOAD_SPOOL_PATH)
    batch = []
    try:
        for upload in files:
            batch.append(await _to_local_file(upload, spool_dir, manager.coordinator.threshold))
    except OSError as e:
        logger.error(f"Could not spool upload batch to {spool_dir}: {e}")
        for local_file in batch:
            await local_file.discard()
        raise HTTPException(500, "Could not receive the uploaded files")
    await manager.submit_batch(batch)
    snapshot = manager.uploads.snapshot
    return {"version": snapshot.version, "uploads": [UploadTaskResponse.model_validate(t) for t in snapshot.items]}


@router.get("/uploads", response_model=UploadListResponse)
async def list_uploads(manager: FileManager = Depends(get_file_manager)):
    snapshot = manager.uploads.snapshot
    return {"version": snapshot.version, "uploads": [UploadTaskResponse.model_validate(t) for t in snapshot.items]}


@router.post("/files/{file_id}/trash", response_model=FileItem)
async def trash_file(file_id: str, manager: FileManager = Depends(get_file_manager)):
    _get_or_404(manager, file_id)
    if not await manager.trash(file_id):
        raise HTTPException(502, "Failed to move to trash")
    return manager.files.get(file_id)


@router.post("/files/{file_id}/restore", response_model=FileItem)
async def restore_file(file_id: str, manager: FileManager = Depends(get_file_manager)):
    _get_or_404(manager, file_id)
    if not await manager.restore(file_id):
        raise HTTPException(502, "Failed to restore file")
    return manager.files.get(file_id)


@router.post("/files/{file_id}/share", response_model=FileItem)
async def toggle_share(file_id: str, manager: FileManager = Depends(get_file_manager)):
    _get_or_404(manager, file_id)
    if not await manager.toggle_share(file_id):
        raise HTTPException(502, "Failed to update share status")
    return manager.files.get(file_id)


@router.patch("/files/{file_id}", response_model=FileItem)
async def rename_file(file_id: str, body: FileRename, manager: FileManager = Depends(get_file_manager)):
    _get_or_404(manager, file_id)
    if not body.file_name.strip():
        raise HTTPException(400, "Invalid filename")
    if not await manager.rename_file(file_id, body.file_name):
        raise HTTPException(502, "Failed to rename file")
    return manager.files.get(file_id)


@router.delete("/files/{file_id}")
async def delete_file(file_id: str, manager: FileManager = Depends(get_file_manager)):
    """Delete the object and its record for good."""
    if not await manager.permanent_delete(file_id):
        raise HTTPException(502, "Failed to delete metadata")
    return {"deleted": True, "id": file_id}


@router.delete("/trash")
async def empty_trash(manager: FileManager = Depends(get_file_manager)):
    cleared = len(manager.files.trashed())
    if not await manager.empty_trash():
        raise HTTPException(502, "Failed to empty trash")
    return {"cleared": cleared}


@router.get("/files/{file_id}/signed-url", response_model=SignedUrlResponse)
async def signed_url(file_id: str, manager: FileManager = Depends(get_file_manager)):
    file = _get_or_404(manager, file_id)
    url = await manager.get_signed_url(file.file_path)
    if url is None:
        raise HTTPException(502, "Could not create a signed URL")
    return {"signed_url": url, "expires_in": manager.settings.SIGNED_URL_TTL}


@router.get("/storage", response_model=StorageUsage)
async def storage_usage(manager: FileManager = Depends(get_file_manager)):
    return {"used_storage": manager.used_storage, "total_storage": manager.total_storage}


@router.get("/notifications", response_model=list[NotificationResponse])
async def list_notifications(manager: FileManager = Depends(get_file_manager)):
    return manager.notifier.recent()
