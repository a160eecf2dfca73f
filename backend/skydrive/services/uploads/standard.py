"""Single-request upload for files at or under the resumable threshold."""
import asyncio
import logging
from typing import Callable

from skydrive.config import Settings, settings as default_settings
from skydrive.errors import UploadTimeoutError
from skydrive.services.file_storage import ObjectStore
from skydrive.services.uploads.models import LocalFile

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int], None]

# Progress shown once the bytes are stored and the metadata write is next
STORED_PROGRESS = 70


class StandardTransferDriver:
    """One non-overwriting put, raced against a wall-clock deadline.

    The store gives no byte-level progress for a single put, so while the
    request is outstanding the driver ticks a synthetic percentage upward
    (step every interval, capped) to show the user something is happening.
    """

    def __init__(self, object_store: ObjectStore, settings: Settings = default_settings):
        self.object_store = object_store
        self.timeout = settings.STANDARD_UPLOAD_TIMEOUT
        self.tick_interval = settings.PROGRESS_TICK_INTERVAL
        self.tick_step = settings.PROGRESS_TICK_STEP
        self.tick_cap = settings.PROGRESS_TICK_CAP

    async def transfer(self, file: LocalFile, storage_path: str, on_progress: ProgressCallback) -> str:
        """Store the file at `storage_path`. Returns the path actually written."""
        data = await file.read()
        ticker = asyncio.create_task(self._tick(on_progress, start=10))
        try:
            # wait_for cancels the put on timeout. The store may still have
            # accepted the bytes; the caller treats the task as failed either way.
            await asyncio.wait_for(
                self.object_store.put(
                    storage_path, data, overwrite=False, content_type=file.mime_type,
                ),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Upload of {file.name} to {storage_path} timed out after {self.timeout}s")
            raise UploadTimeoutError("Upload timed out. Please try again.")
        finally:
            ticker.cancel()
            try:
                await ticker
            except asyncio.CancelledError:
                pass

        on_progress(STORED_PROGRESS)
        return storage_path

    async def _tick(self, on_progress: ProgressCallback, start: int) -> None:
        progress = start
        while True:
            await asyncio.sleep(self.tick_interval)
            progress = min(progress + self.tick_step, self.tick_cap)
            on_progress(progress)
