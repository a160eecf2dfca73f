"""Upload task and notification schemas."""
from datetime import datetime
from typing import Optional
from skydrive.schemas.base import CamelModel, CamelORMModel
from skydrive.services.uploads.models import TransferStrategy, UploadState


class UploadTaskResponse(CamelORMModel):
    task_id: str
    file_name: str
    size_bytes: int
    progress: int
    state: UploadState
    strategy: Optional[TransferStrategy] = None


class UploadListResponse(CamelModel):
    version: int
    uploads: list[UploadTaskResponse]


class NotificationResponse(CamelORMModel):
    level: str
    message: str
    created_at: datetime
