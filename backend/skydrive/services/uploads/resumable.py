"""Chunked, resumable upload for files above the resumable threshold.

Each chunk is acknowledged before the next is read. Unfinished sessions are
remembered by fingerprint so a later attempt for the same local file picks
up from the last acknowledged byte instead of starting over.
"""
import asyncio
import json
import logging
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Callable

import aiofiles

from skydrive.config import Settings, settings as default_settings
from skydrive.errors import PreconditionError, TransferFailedError
from skydrive.services.auth import AuthProvider
from skydrive.services.uploads.models import LocalFile
from skydrive.services.uploads.tus import TusError, TusTransport

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int], None]


@dataclass(frozen=True)
class PreviousUpload:
    fingerprint: str
    upload_url: str
    storage_path: str
    created_at: float


class FingerprintStore:
    """Fingerprint -> unfinished upload sessions, persisted as a JSON file."""

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._lock = asyncio.Lock()

    async def _load(self) -> list[dict]:
        if not self.path.exists():
            return []
        async with aiofiles.open(self.path, "r") as f:
            raw = await f.read()
        try:
            entries = json.loads(raw) if raw.strip() else []
        except json.JSONDecodeError:
            logger.warning(f"Ignoring unreadable fingerprint file {self.path}")
            return []
        return entries if isinstance(entries, list) else []

    async def _save(self, entries: list[dict]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        async with aiofiles.open(self.path, "w") as f:
            await f.write(json.dumps(entries, indent=2))

    async def find(self, fingerprint: str) -> list[PreviousUpload]:
        """Unfinished uploads for this fingerprint, most recent first."""
        async with self._lock:
            entries = await self._load()
        matches = [PreviousUpload(**e) for e in reversed(entries) if e.get("fingerprint") == fingerprint]
        return sorted(matches, key=lambda u: u.created_at, reverse=True)

    async def add(self, fingerprint: str, upload_url: str, storage_path: str) -> PreviousUpload:
        entry = PreviousUpload(fingerprint, upload_url, storage_path, time.time())
        async with self._lock:
            entries = await self._load()
            entries.append(asdict(entry))
            await self._save(entries)
        return entry

    async def remove(self, fingerprint: str, upload_url: str | None = None) -> None:
        """Forget one session, or every session of the fingerprint if no url is given."""
        async with self._lock:
            entries = await self._load()
            kept = [
                e for e in entries
                if e.get("fingerprint") != fingerprint
                or (upload_url is not None and e.get("upload_url") != upload_url)
            ]
            if len(kept) != len(entries):
                await self._save(kept)


class ResumableTransferDriver:
    """Moves a file through a tus session in fixed-size chunks."""

    def __init__(
        self,
        transport: TusTransport,
        auth: AuthProvider,
        fingerprints: FingerprintStore,
        settings: Settings = default_settings,
    ):
        self.transport = transport
        self.auth = auth
        self.fingerprints = fingerprints
        self.service_key = settings.SUPABASE_ANON_KEY
        self.bucket = settings.STORAGE_BUCKET
        self.chunk_size = settings.RESUMABLE_CHUNK_SIZE
        self.retry_delays = list(settings.RESUMABLE_RETRY_DELAYS)

    def fingerprint(self, file: LocalFile) -> str:
        return f"tus-br-{file.identity()}-{self.transport.endpoint}"

    async def _auth_headers(self) -> dict[str, str]:
        # Fetched on every start: the access token is short-lived
        session = await self.auth.get_session()
        if session is None or not session.access_token:
            raise PreconditionError("No active auth session for resumable upload")
        if not self.service_key:
            raise PreconditionError("Missing service key for resumable upload")
        return {
            "authorization": f"Bearer {session.access_token}",
            "apikey": self.service_key,
            "x-upsert": "false",
        }

    async def transfer(self, file: LocalFile, storage_path: str, on_progress: ProgressCallback) -> str:
        """Upload the file. Returns the storage path the bytes ended up at.

        When an earlier session for the same file is resumed, that session's
        storage path wins over `storage_path`, since its bytes already live there.
        """
        headers = await self._auth_headers()
        fingerprint = self.fingerprint(file)

        upload_url: str | None = None
        target_path = storage_path
        previous = await self.fingerprints.find(fingerprint)
        if previous:
            upload_url, target_path = previous[0].upload_url, previous[0].storage_path
            logger.info(f"Resuming earlier upload of {file.name} at {upload_url}")

        offset = 0
        attempt = 0
        offset_at_last_failure: int | None = None
        need_offset = upload_url is not None

        def report(uploaded: int) -> None:
            on_progress(round(uploaded / file.size * 100) if file.size else 100)

        while True:
            try:
                if upload_url is None:
                    first_chunk = await file.read_chunk(0, self.chunk_size)
                    upload_url, offset = await self.transport.create(
                        file.size, self._metadata(file, target_path), headers, first_chunk,
                    )
                    await self.fingerprints.add(fingerprint, upload_url, target_path)
                elif need_offset:
                    offset = await self.transport.get_offset(upload_url, headers)
                need_offset = False
                report(offset)

                while offset < file.size:
                    chunk = await file.read_chunk(offset, self.chunk_size)
                    offset = await self.transport.append(upload_url, offset, chunk, headers)
                    report(offset)
                break

            except TusError as e:
                if e.session_gone and upload_url is not None:
                    logger.info(f"Upload session {upload_url} no longer exists, starting over")
                    await self.fingerprints.remove(fingerprint, upload_url)
                    upload_url, target_path, offset = None, storage_path, 0
                    if need_offset:
                        # Stale session discovered before any bytes were sent
                        need_offset = False
                        continue
                elif not e.retryable:
                    raise TransferFailedError(f"Upload of {file.name} rejected: {e}") from e

                # Progress since the previous failure earns a fresh set of retries
                if offset_at_last_failure is not None and offset > offset_at_last_failure:
                    attempt = 0
                offset_at_last_failure = offset

                if attempt >= len(self.retry_delays):
                    raise TransferFailedError(
                        f"Upload of {file.name} failed after {attempt} retries: {e}"
                    ) from e
                delay = self.retry_delays[attempt]
                attempt += 1
                logger.warning(
                    f"Resumable upload of {file.name} failed"
                    f" (retry {attempt}/{len(self.retry_delays)} in {delay:.1f}s): {e}"
                )
                await asyncio.sleep(delay)
                need_offset = upload_url is not None

        await self.fingerprints.remove(fingerprint)
        return target_path

    def _metadata(self, file: LocalFile, storage_path: str) -> dict[str, str]:
        return {
            "bucketName": self.bucket,
            "objectName": storage_path,
            "contentType": file.mime_type,
            "cacheControl": "3600",
        }
