"""FileRecord model - file metadata (actual bytes live in the object store)."""
import uuid
from datetime import datetime, timezone
from sqlalchemy import BigInteger, Boolean, DateTime, String
from sqlalchemy.orm import Mapped, mapped_column
from skydrive.models.base import Base, UserMixin


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FileRecord(Base, UserMixin):
    __tablename__ = "files"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    file_name: Mapped[str] = mapped_column(String(500), nullable=False)
    # Object store key. Never reused, never changed after insert.
    file_path: Mapped[str] = mapped_column(String(1000), nullable=False, unique=True)
    file_size: Mapped[int] = mapped_column(BigInteger, nullable=False)
    mime_type: Mapped[str] = mapped_column(String(255), nullable=False, default="application/octet-stream")
    uploaded_at: Mapped[datetime] = mapped_column("upload_date", DateTime(timezone=True), default=_utcnow, index=True)
    is_shared: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    share_url: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    is_trashed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False, index=True)
    trashed_at: Mapped[datetime | None] = mapped_column("trashed_date", DateTime(timezone=True), nullable=True)
    thumbnail_url: Mapped[str | None] = mapped_column(String(2000), nullable=True)
