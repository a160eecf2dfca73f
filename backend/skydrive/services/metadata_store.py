"""Row CRUD over the `files` table.

Every method opens its own short-lived session, so concurrent upload tasks
never share one.
"""
import logging
from typing import Any

from sqlalchemy import delete, desc, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from skydrive.database import async_session as default_session_factory
from skydrive.errors import StoreWriteError
from skydrive.models.file_record import FileRecord
from skydrive.schemas.file import FileItem

logger = logging.getLogger(__name__)

# Columns a lifecycle update may touch. Path, size and type are fixed at insert.
MUTABLE_FIELDS = {"file_name", "is_shared", "share_url", "is_trashed", "trashed_at"}


class MetadataStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession] = default_session_factory):
        self._session_factory = session_factory

    async def list_files(self, user_id: str) -> list[FileItem]:
        """All of a user's rows, newest upload first."""
        try:
            async with self._session_factory() as db:
                result = await db.execute(
                    select(FileRecord)
                    .where(FileRecord.user_id == user_id)
                    .order_by(desc(FileRecord.uploaded_at))
                )
                return [FileItem.model_validate(row) for row in result.scalars().all()]
        except SQLAlchemyError as e:
            raise StoreWriteError(f"Failed to load files: {e}") from e

    async def insert_file(self, values: dict[str, Any]) -> FileItem:
        """Insert one row and return it as stored."""
        try:
            async with self._session_factory() as db:
                record = FileRecord(**values)
                db.add(record)
                await db.commit()
                await db.refresh(record)
                return FileItem.model_validate(record)
        except SQLAlchemyError as e:
            raise StoreWriteError(f"Failed to save file metadata: {e}") from e

    async def update_file(self, file_id: str, values: dict[str, Any]) -> FileItem | None:
        """Update mutable columns. Returns the new row, or None if the id is unknown."""
        illegal = set(values) - MUTABLE_FIELDS
        if illegal:
            raise ValueError(f"Immutable file fields cannot be updated: {sorted(illegal)}")
        try:
            async with self._session_factory() as db:
                result = await db.execute(
                    update(FileRecord).where(FileRecord.id == file_id).values(**values)
                )
                await db.commit()
                if result.rowcount == 0:
                    return None
                record = await db.get(FileRecord, file_id, populate_existing=True)
                return FileItem.model_validate(record) if record else None
        except SQLAlchemyError as e:
            raise StoreWriteError(f"Failed to update file {file_id}: {e}") from e

    async def delete_file(self, file_id: str) -> int:
        """Delete one row. Returns the number of rows removed (0 or 1)."""
        try:
            async with self._session_factory() as db:
                result = await db.execute(delete(FileRecord).where(FileRecord.id == file_id))
                await db.commit()
                return result.rowcount
        except SQLAlchemyError as e:
            raise StoreWriteError(f"Failed to delete file {file_id}: {e}") from e

    async def delete_trashed(self, user_id: str) -> int:
        """Bulk delete every trashed row of a user."""
        try:
            async with self._session_factory() as db:
                result = await db.execute(
                    delete(FileRecord).where(
                        FileRecord.user_id == user_id,
                        FileRecord.is_trashed.is_(True),
                    )
                )
                await db.commit()
                logger.info(f"Deleted {result.rowcount} trashed row(s) for user {user_id}")
                return result.rowcount
        except SQLAlchemyError as e:
            raise StoreWriteError(f"Failed to empty trash: {e}") from e

    async def get_shared_file(self, file_id: str) -> FileItem | None:
        """A row anyone may read: shared and not in the trash."""
        try:
            async with self._session_factory() as db:
                result = await db.execute(
                    select(FileRecord).where(
                        FileRecord.id == file_id,
                        FileRecord.is_shared.is_(True),
                        FileRecord.is_trashed.is_(False),
                    )
                )
                record = result.scalar_one_or_none()
                return FileItem.model_validate(record) if record else None
        except SQLAlchemyError as e:
            raise StoreWriteError(f"Failed to load shared file {file_id}: {e}") from e
