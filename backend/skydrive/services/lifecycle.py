"""Trash / restore / delete / share transitions.

Every transition writes to the metadata store first and mirrors the result
into the shared file list only after the store confirms. Failures become a
notification and leave the cached list untouched. Nothing is retried.

Permanent deletes go storage first, metadata second. A crash in between
leaves a row pointing at missing bytes, which a repeated delete cleans up;
the other order could leave bytes no row refers to.
"""
import logging
from datetime import datetime, timezone
from typing import Optional

from skydrive.config import Settings, settings as default_settings
from skydrive.errors import NotFoundError, safe_error_message
from skydrive.services.auth import AuthProvider
from skydrive.services.file_storage import ObjectStore
from skydrive.services.metadata_store import MetadataStore
from skydrive.services.notifications import Notifier
from skydrive.services.state import FileListStore

logger = logging.getLogger(__name__)


def build_share_url(origin: str, file_id: str) -> str:
    return f"{origin.rstrip('/')}/share/{file_id}"


class FileLifecycle:
    def __init__(
        self,
        auth: AuthProvider,
        object_store: ObjectStore,
        metadata: MetadataStore,
        files: FileListStore,
        notifier: Notifier,
        settings: Settings = default_settings,
    ):
        self.auth = auth
        self.object_store = object_store
        self.metadata = metadata
        self.files = files
        self.notifier = notifier
        self.share_origin = settings.SHARE_ORIGIN
        self.signed_url_ttl = settings.SIGNED_URL_TTL

    async def trash(self, file_id: str) -> bool:
        """Active -> Trashed."""
        file = self.files.get(file_id)
        if file is None:
            logger.info(f"Trash of unknown file {file_id} ignored")
            return True
        if file.is_trashed:
            return True
        now = datetime.now(timezone.utc)
        try:
            await self._write(file_id, {"is_trashed": True, "trashed_at": now})
        except Exception as e:
            logger.error(f"Trash failed for {file_id}: {e}")
            self.notifier.error("Failed to move to trash")
            return False
        self.files.update(file_id, is_trashed=True, trashed_at=now)
        logger.info(f"File {file_id} moved to trash")
        return True

    async def restore(self, file_id: str) -> bool:
        """Trashed -> Active. Restoring an active file changes nothing."""
        file = self.files.get(file_id)
        if file is None:
            logger.info(f"Restore of unknown file {file_id} ignored")
            return True
        if not file.is_trashed:
            return True
        try:
            await self._write(file_id, {"is_trashed": False, "trashed_at": None})
        except Exception as e:
            logger.error(f"Restore failed for {file_id}: {e}")
            self.notifier.error("Failed to restore file")
            return False
        self.files.update(file_id, is_trashed=False, trashed_at=None)
        logger.info(f"File {file_id} restored")
        return True

    async def permanent_delete(self, file_id: str) -> bool:
        """Trashed or Active -> Deleted."""
        file = self.files.get(file_id)
        if file is None:
            logger.info(f"Delete of unknown file {file_id} ignored")
            return True

        # Phase 1: bytes. Best effort.
        try:
            failed = await self.object_store.remove([file.file_path])
            if failed:
                logger.warning(f"Storage did not remove {failed} while deleting {file_id}")
        except Exception as e:
            logger.warning(f"Storage deletion warning for {file.file_path}: {e}")

        # Phase 2: the row. This is what the user sees, so failure is reported.
        try:
            deleted = await self.metadata.delete_file(file_id)
        except Exception as e:
            logger.error(f"Permanent delete failed for {file_id}: {e}")
            self.notifier.error("Failed to delete metadata")
            return False

        if deleted == 0:
            # Another delete got there first
            logger.info(f"File {file_id} was already deleted")
        else:
            logger.info(f"File {file_id} permanently deleted")
        self.files.remove([file_id])
        return True

    async def empty_trash(self) -> bool:
        """Permanently delete every trashed file in one batch."""
        session = await self.auth.get_session()
        if session is None:
            self.notifier.error("Sign in to empty the trash")
            return False

        trashed = self.files.trashed()
        paths = [f.file_path for f in trashed]
        logger.info(f"Emptying trash: {len(trashed)} file(s)")

        if paths:
            try:
                failed = await self.object_store.remove(paths)
                if failed:
                    logger.warning(f"Storage emptyTrash warning: {len(failed)} object(s) not removed: {failed}")
            except Exception as e:
                logger.warning(f"Storage emptyTrash warning: {e}")

        try:
            await self.metadata.delete_trashed(session.user.id)
        except Exception as e:
            logger.error(f"Empty trash failed: {e}")
            self.notifier.error("Failed to empty trash")
            return False

        self.files.remove(f.id for f in trashed)
        self.notifier.success(f"Cleared {len(trashed)} items from trash")
        return True

    async def toggle_share(self, file_id: str) -> bool:
        """Flip sharing. The link is derived from the id, so toggling twice restores it exactly."""
        file = self.files.get(file_id)
        if file is None:
            logger.info(f"Share toggle of unknown file {file_id} ignored")
            return True
        is_shared = not file.is_shared
        share_url = build_share_url(self.share_origin, file_id) if is_shared else None
        try:
            await self._write(file_id, {"is_shared": is_shared, "share_url": share_url})
        except Exception as e:
            logger.error(f"Toggle share failed for {file_id}: {e}")
            self.notifier.error("Failed to update share status")
            return False
        self.files.update(file_id, is_shared=is_shared, share_url=share_url)
        self.notifier.success("Sharing enabled" if is_shared else "Sharing disabled")
        return True

    async def rename(self, file_id: str, new_name: str) -> bool:
        """Change the display name. The storage path never changes."""
        new_name = new_name.strip()
        if not new_name:
            self.notifier.error("Invalid filename")
            return False
        if self.files.get(file_id) is None:
            self.notifier.error("File not found")
            return False
        try:
            await self._write(file_id, {"file_name": new_name})
        except Exception as e:
            logger.error(f"Rename failed for {file_id}: {e}")
            self.notifier.error("Failed to rename file")
            return False
        self.files.update(file_id, file_name=new_name)
        return True

    async def get_signed_url(self, path: str) -> Optional[str]:
        try:
            return await self.object_store.create_signed_url(path, self.signed_url_ttl)
        except Exception as e:
            logger.error(f"Error creating signed URL for {path}: {safe_error_message(e)}")
            return None

    async def _write(self, file_id: str, values: dict) -> None:
        updated = await self.metadata.update_file(file_id, values)
        if updated is None:
            raise NotFoundError(f"File {file_id} no longer exists")

