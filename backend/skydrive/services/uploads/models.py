"""Upload task model, task events and the local file abstraction."""
import hashlib
import mimetypes
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Optional

import aiofiles
import aiofiles.os

DEFAULT_MIME_TYPE = "application/octet-stream"


class TransferStrategy(str, Enum):
    STANDARD = "standard"
    RESUMABLE = "resumable"


class UploadState(str, Enum):
    """Pending -> Transferring -> Committing -> Done, or Failed from any of them."""
    PENDING = "pending"
    TRANSFERRING = "transferring"
    COMMITTING = "committing"
    DONE = "done"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (UploadState.DONE, UploadState.FAILED)


@dataclass(frozen=True)
class UploadTask:
    """One row of the upload progress panel. Never shared between files."""
    task_id: str
    file_name: str
    size_bytes: int
    progress: int = 0
    state: UploadState = UploadState.PENDING
    strategy: Optional[TransferStrategy] = None

    def advance(
        self, *, state: UploadState | None = None, progress: int | None = None,
        strategy: TransferStrategy | None = None,
    ) -> "UploadTask":
        changes = {}
        if state is not None:
            changes["state"] = state
        if progress is not None:
            changes["progress"] = min(100, max(0, int(progress)))
        if strategy is not None:
            changes["strategy"] = strategy
        return replace(self, **changes) if changes else self


@dataclass(frozen=True)
class TaskEvent:
    """Message sent over a task's channel from the transfer side to the state side."""
    state: UploadState
    progress: int | None = None
    strategy: TransferStrategy | None = None
    error: str | None = None


@dataclass(frozen=True)
class LocalFile:
    """A file picked by the user, backed by in-memory bytes or a path on disk.

    `temporary` marks a spooled copy on disk that `discard()` removes once the
    upload is over. `digest` is the content hash, when the caller already has one.
    """
    name: str
    size: int
    mime_type: str = DEFAULT_MIME_TYPE
    data: bytes | None = field(default=None, repr=False)
    path: Path | None = None
    last_modified: int = 0
    digest: str | None = None
    temporary: bool = False

    @classmethod
    def from_bytes(cls, name: str, data: bytes, mime_type: str | None = None, last_modified: int = 0) -> "LocalFile":
        return cls(
            name=name,
            size=len(data),
            mime_type=mime_type or guess_mime_type(name),
            data=data,
            last_modified=last_modified,
        )

    @classmethod
    def from_path(
        cls, path: str | Path, mime_type: str | None = None, *,
        name: str | None = None, digest: str | None = None, temporary: bool = False,
    ) -> "LocalFile":
        path = Path(path)
        stat = path.stat()
        name = name or path.name
        return cls(
            name=name,
            size=stat.st_size,
            mime_type=mime_type or guess_mime_type(name),
            path=path,
            # A spooled copy's mtime says nothing about the original file
            last_modified=0 if temporary else int(stat.st_mtime * 1000),
            digest=digest,
            temporary=temporary,
        )

    async def read(self) -> bytes:
        if self.data is not None:
            return self.data
        async with aiofiles.open(self.path, "rb") as f:
            return await f.read()

    async def read_chunk(self, offset: int, length: int) -> bytes:
        if self.data is not None:
            return self.data[offset:offset + length]
        async with aiofiles.open(self.path, "rb") as f:
            await f.seek(offset)
            return await f.read(length)

    def identity(self) -> str:
        """Stable identity used to find an earlier, unfinished upload of the same file."""
        if self.last_modified:
            return f"{self.name}-{self.mime_type}-{self.size}-{self.last_modified}"
        digest = (self.digest or hashlib.sha256(self.data or b"").hexdigest())[:16]
        return f"{self.name}-{self.mime_type}-{self.size}-{digest}"

    async def discard(self) -> None:
        """Delete the spooled copy, if this file is one."""
        if not self.temporary or self.path is None:
            return
        try:
            await aiofiles.os.remove(self.path)
        except FileNotFoundError:
            pass


def guess_mime_type(name: str) -> str:
    mime, _ = mimetypes.guess_type(name)
    return mime or DEFAULT_MIME_TYPE
