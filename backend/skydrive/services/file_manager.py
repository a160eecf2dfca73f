"""Application state owner.

Holds the shared file list, the upload task list and the notifications, and
exposes every operation the UI can trigger. One instance per process, created
in the FastAPI lifespan and reached from routes through `app.state`.
"""
import logging
from typing import Callable, Iterable, Optional

from skydrive.config import Settings, settings as default_settings
from skydrive.errors import StoreWriteError
from skydrive.schemas.file import FileItem
from skydrive.services.auth import SIGNED_IN, SIGNED_OUT, AuthProvider, Session
from skydrive.services.file_storage import ObjectStore
from skydrive.services.lifecycle import FileLifecycle
from skydrive.services.metadata_store import MetadataStore
from skydrive.services.notifications import Notifier
from skydrive.services.state import FileListStore, UploadTaskStore
from skydrive.services.uploads.coordinator import UploadCoordinator
from skydrive.services.uploads.models import LocalFile, TransferStrategy
from skydrive.services.uploads.resumable import FingerprintStore, ResumableTransferDriver
from skydrive.services.uploads.standard import StandardTransferDriver
from skydrive.services.uploads.tus import HttpTusTransport, LocalTusTransport, TusTransport, supabase_resumable_endpoint

logger = logging.getLogger(__name__)


def build_tus_transport(settings: Settings = default_settings) -> TusTransport:
    if settings.STORAGE_BACKEND == "local":
        return LocalTusTransport(settings)
    endpoint = supabase_resumable_endpoint(settings.SUPABASE_URL)
    if endpoint is None:
        raise ValueError("Invalid Supabase project URL")
    return HttpTusTransport(endpoint)


class FileManager:
    def __init__(
        self,
        auth: AuthProvider,
        object_store: ObjectStore,
        metadata: MetadataStore,
        tus_transport: TusTransport,
        settings: Settings = default_settings,
    ):
        self.settings = settings
        self.auth = auth
        self.object_store = object_store
        self.metadata = metadata
        self.tus_transport = tus_transport
        self.files = FileListStore()
        self.uploads = UploadTaskStore()
        self.notifier = Notifier()
        self.syncing = False
        self._unsubscribe: Optional[Callable[[], None]] = None

        drivers = {
            TransferStrategy.STANDARD: StandardTransferDriver(object_store, settings),
            TransferStrategy.RESUMABLE: ResumableTransferDriver(
                tus_transport, auth, FingerprintStore(settings.RESUMABLE_FINGERPRINT_PATH), settings,
            ),
        }
        self.coordinator = UploadCoordinator(
            auth, object_store, metadata, self.files, self.uploads, self.notifier, drivers, settings,
        )
        self.lifecycle = FileLifecycle(auth, object_store, metadata, self.files, self.notifier, settings)

    async def start(self) -> None:
        """Subscribe to auth changes once and load the list if already signed in."""
        if self._unsubscribe is None:
            self._unsubscribe = self.auth.on_auth_state_change(self._on_auth_change)
        session = await self.auth.get_session()
        if session is not None:
            await self._sync(session.user.id)

    async def close(self) -> None:
        """Wait for in-flight uploads, then release the HTTP clients."""
        await self.coordinator.join()
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        for client in (self.tus_transport, self.object_store, self.auth):
            close = getattr(client, "close", None)
            if close is not None:
                await close()

    async def _on_auth_change(self, event: str, session: Optional[Session]) -> None:
        if event == SIGNED_IN and session is not None:
            await self._sync(session.user.id)
        elif event == SIGNED_OUT:
            self.files.reset(())

    async def _sync(self, user_id: str) -> bool:
        try:
            rows = await self.metadata.list_files(user_id)
        except StoreWriteError as e:
            logger.error(f"Error fetching files: {e}")
            self.notifier.error("Failed to load files")
            return False
        self.files.reset(rows)
        logger.info(f"Loaded {len(rows)} file(s) for user {user_id}")
        return True

    # Upload orchestration

    async def submit_batch(self, local_files: Iterable[LocalFile]) -> None:
        await self.coordinator.submit_batch(local_files)

    # Lifecycle

    async def trash(self, file_id: str) -> bool:
        return await self.lifecycle.trash(file_id)

    async def restore(self, file_id: str) -> bool:
        return await self.lifecycle.restore(file_id)

    async def permanent_delete(self, file_id: str) -> bool:
        return await self.lifecycle.permanent_delete(file_id)

    async def empty_trash(self) -> bool:
        return await self.lifecycle.empty_trash()

    async def toggle_share(self, file_id: str) -> bool:
        return await self.lifecycle.toggle_share(file_id)

    async def rename_file(self, file_id: str, new_name: str) -> bool:
        return await self.lifecycle.rename(file_id, new_name)

    async def get_signed_url(self, path: str) -> Optional[str]:
        return await self.lifecycle.get_signed_url(path)

    # Public share links

    async def get_shared_file(self, file_id: str) -> Optional[tuple[FileItem, Optional[str]]]:
        """A shared, untrashed file and a short-lived download URL for it.

        Works without a session. The URL is None when the store cannot sign one.
        """
        item = await self.metadata.get_shared_file(file_id)
        if item is None:
            return None
        try:
            url = await self.object_store.create_signed_url(item.file_path, self.settings.SIGNED_URL_TTL)
        except StoreWriteError as e:
            logger.warning(f"Could not sign download URL for shared file {file_id}: {e}")
            url = None
        return item, url

    async def refresh_files(self) -> bool:
        """Explicit full resync from the metadata store."""
        session = await self.auth.get_session()
        if session is None:
            self.files.reset(())
            return False
        self.syncing = True
        try:
            ok = await self._sync(session.user.id)
            if ok:
                self.notifier.success("Synced with SkyDrive")
            return ok
        finally:
            self.syncing = False

    @property
    def used_storage(self) -> int:
        return self.files.used_bytes()

    @property
    def total_storage(self) -> int:
        return self.settings.TOTAL_STORAGE_BYTES
