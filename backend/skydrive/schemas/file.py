"""File request/response schemas."""
from datetime import datetime, timezone
from typing import Optional
from pydantic import field_validator
from skydrive.schemas.base import CamelModel, CamelORMModel


class FileItem(CamelORMModel):
    """One stored file as held in the shared file list.

    Frozen: the list is only ever changed by swapping in new copies.
    """
    model_config = {**CamelORMModel.model_config, "frozen": True}

    id: str
    user_id: str
    file_name: str
    file_path: str
    file_size: int
    mime_type: str
    uploaded_at: datetime
    is_shared: bool = False
    share_url: Optional[str] = None
    is_trashed: bool = False
    trashed_at: Optional[datetime] = None
    thumbnail_url: Optional[str] = None

    @field_validator("uploaded_at", "trashed_at")
    @classmethod
    def assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        """SQLite hands back naive datetimes; everything here is UTC."""
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class FileListResponse(CamelModel):
    version: int
    files: list[FileItem]


class FileRename(CamelModel):
    file_name: str


class SignedUrlResponse(CamelModel):
    signed_url: str
    expires_in: int


class StorageUsage(CamelModel):
    used_storage: int
    total_storage: int


class SharedFileResponse(CamelModel):
    """What an anonymous visitor of a share link gets to see."""
    id: str
    file_name: str
    file_size: int
    mime_type: str
    uploaded_at: datetime
    download_url: Optional[str] = None
