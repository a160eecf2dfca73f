"""Upload coordinator.

`submit_batch()` turns a batch of local files into one independent job per
file and returns once they are launched. Each job owns a channel (an
asyncio.Queue): the transfer side only ever puts `TaskEvent`s on it, and a
single consumer per job applies them to the upload task store, so nothing
but that consumer writes the job's progress row.

A job goes Pending -> Transferring -> Committing -> Done, or to Failed from
any step. Metadata insert is the commit point: until it succeeds the file
does not exist as far as the rest of the app is concerned.
"""
import asyncio
import logging
import uuid
from typing import Callable, Iterable, Protocol

from skydrive.config import Settings, settings as default_settings
from skydrive.errors import PreconditionError, safe_error_message
from skydrive.schemas.file import FileItem
from skydrive.services.auth import AuthProvider
from skydrive.services.file_storage import ObjectStore
from skydrive.services.metadata_store import MetadataStore
from skydrive.services.notifications import Notifier
from skydrive.services.state import FileListStore, UploadTaskStore
from skydrive.services.uploads.models import LocalFile, TaskEvent, TransferStrategy, UploadState, UploadTask
from skydrive.services.uploads.strategy import build_storage_path, select_strategy

logger = logging.getLogger(__name__)

# Progress shown as soon as the transfer starts
TRANSFER_START_PROGRESS = 10


class TransferDriver(Protocol):
    async def transfer(self, file: LocalFile, storage_path: str, on_progress: Callable[[int], None]) -> str:
        """Move the bytes. Returns the storage path they ended up at."""
        ...


class UploadJob:
    """One file's trip from local bytes to a committed file record."""

    def __init__(self, task: UploadTask, file: LocalFile, owner_id: str, storage_path: str):
        self.task = task
        self.file = file
        self.owner_id = owner_id
        self.storage_path = storage_path
        self.channel: asyncio.Queue[TaskEvent] = asyncio.Queue()
        self.state = UploadState.PENDING

    @property
    def task_id(self) -> str:
        return self.task.task_id

    def emit(
        self, state: UploadState, progress: int | None = None, *,
        strategy: TransferStrategy | None = None, error: str | None = None,
    ) -> None:
        if self.state.is_terminal:
            return
        self.state = state
        self.channel.put_nowait(TaskEvent(state=state, progress=progress, strategy=strategy, error=error))

    def report_progress(self, progress: int) -> None:
        """Progress callback handed to the transfer drivers."""
        self.emit(self.state, progress)


class UploadCoordinator:
    def __init__(
        self,
        auth: AuthProvider,
        object_store: ObjectStore,
        metadata: MetadataStore,
        files: FileListStore,
        uploads: UploadTaskStore,
        notifier: Notifier,
        drivers: dict[TransferStrategy, TransferDriver],
        settings: Settings = default_settings,
    ):
        self.auth = auth
        self.object_store = object_store
        self.metadata = metadata
        self.files = files
        self.uploads = uploads
        self.notifier = notifier
        self.drivers = drivers
        self.threshold = settings.RESUMABLE_THRESHOLD_BYTES
        self.linger = settings.UPLOAD_TASK_LINGER
        self._inflight: set[asyncio.Task] = set()

    @property
    def busy(self) -> bool:
        return bool(self._inflight)

    async def submit_batch(self, local_files: Iterable[LocalFile]) -> None:
        """Start uploading every file concurrently. Outcomes show up in the stores."""
        local_files = list(local_files)
        if not local_files:
            return
        session = await self.auth.get_session()
        if session is None:
            logger.warning(f"Ignoring batch of {len(local_files)} file(s): not signed in")
            self.notifier.error("Sign in to upload files")
            for f in local_files:
                await f.discard()
            return

        jobs = [
            UploadJob(
                task=UploadTask(task_id=str(uuid.uuid4()), file_name=f.name, size_bytes=f.size),
                file=f,
                owner_id=session.user.id,
                storage_path=build_storage_path(session.user.id, f.name),
            )
            for f in local_files
        ]
        self.uploads.add(job.task for job in jobs)
        logger.info(f"Submitted batch of {len(jobs)} upload(s) for user {session.user.id}")

        for job in jobs:
            task = asyncio.create_task(self._run_job(job), name=f"upload-{job.task_id}")
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)

    async def join(self) -> None:
        """Wait until every launched job has finished (including its linger)."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    async def _run_job(self, job: UploadJob) -> None:
        try:
            await asyncio.gather(self._drive(job), self._apply_events(job))
        finally:
            await job.file.discard()

    async def _drive(self, job: UploadJob) -> None:
        """Transfer side: moves bytes, commits metadata, emits events."""
        file = job.file
        try:
            strategy = select_strategy(file.size, self.threshold)
            driver = self.drivers.get(strategy)
            if driver is None:
                raise PreconditionError(f"No transfer driver configured for {strategy.value} uploads")

            job.emit(UploadState.TRANSFERRING, TRANSFER_START_PROGRESS, strategy=strategy)
            logger.info(f"Uploading {file.name} ({file.size} bytes, {strategy.value}) to {job.storage_path}")
            stored_path = await driver.transfer(file, job.storage_path, job.report_progress)

            job.emit(UploadState.COMMITTING)
            thumbnail_url = (
                self.object_store.get_public_url(stored_path)
                if file.mime_type.startswith("image/") else None
            )
            record = await self.metadata.insert_file({
                "user_id": job.owner_id,
                "file_name": file.name,
                "file_path": stored_path,
                "file_size": file.size,
                "mime_type": file.mime_type or "application/octet-stream",
                "thumbnail_url": thumbnail_url,
            })

            await self._publish(job, record)
            job.emit(UploadState.DONE, 100)
            logger.info(f"Upload of {file.name} committed as file {record.id}")

        except Exception as e:
            # Bytes stored before a failed metadata insert stay orphaned; nothing reclaims them here
            logger.error(f"Upload failed for {file.name}: {e}")
            job.emit(UploadState.FAILED, error=safe_error_message(e))

    async def _publish(self, job: UploadJob, record: FileItem) -> None:
        """Show a committed record, unless its owner is no longer the one signed in."""
        session = await self.auth.get_session()
        if session is None or session.user.id != job.owner_id:
            logger.info(
                f"Upload of {job.file.name} committed for user {job.owner_id} after they signed out;"
                f" not adding file {record.id} to the current list"
            )
            return
        self.files.prepend(record)

    async def _apply_events(self, job: UploadJob) -> None:
        """State side: the only writer of this job's row in the upload task store."""
        while True:
            event = await job.channel.get()
            self.uploads.update(job.task_id, state=event.state, progress=event.progress, strategy=event.strategy)

            if event.state is UploadState.DONE:
                await asyncio.sleep(self.linger)
                self.uploads.remove(job.task_id)
                return
            if event.state is UploadState.FAILED:
                self.uploads.remove(job.task_id)
                self.notifier.error(f"Failed to upload {job.file.name}: {event.error}")
                return
