"""Process-wide observable state: the shared file list and upload tasks.

Both stores are single-writer (the event loop) and multi-reader. Every
mutation builds a new tuple and bumps the version, so a reader holding a
snapshot never sees a half-applied update.
"""
import logging
from dataclasses import dataclass
from typing import Callable, Generic, Iterable, TypeVar

from skydrive.schemas.file import FileItem
from skydrive.services.uploads.models import TransferStrategy, UploadState, UploadTask

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Snapshot(Generic[T]):
    version: int
    items: tuple[T, ...]

    def __iter__(self):
        return iter(self.items)

    def __len__(self) -> int:
        return len(self.items)


class SnapshotStore(Generic[T]):
    """Versioned, copy-on-write collection with change listeners."""

    def __init__(self, items: Iterable[T] = ()):
        self._snapshot: Snapshot[T] = Snapshot(0, tuple(items))
        self._listeners: list[Callable[[Snapshot[T]], None]] = []

    @property
    def snapshot(self) -> Snapshot[T]:
        return self._snapshot

    @property
    def version(self) -> int:
        return self._snapshot.version

    def replace(self, fn: Callable[[tuple[T, ...]], Iterable[T]]) -> Snapshot[T]:
        """Derive the next snapshot from the current one and publish it."""
        current = self._snapshot
        self._snapshot = Snapshot(current.version + 1, tuple(fn(current.items)))
        for listener in list(self._listeners):
            try:
                listener(self._snapshot)
            except Exception as e:
                logger.error(f"State listener {listener!r} failed: {e}")
        return self._snapshot

    def subscribe(self, listener: Callable[[Snapshot[T]], None]) -> Callable[[], None]:
        """Register a listener. Returns a function that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe


class FileListStore(SnapshotStore[FileItem]):
    """The shared file list: a cache of the metadata store, newest first."""

    def get(self, file_id: str) -> FileItem | None:
        for item in self._snapshot.items:
            if item.id == file_id:
                return item
        return None

    def reset(self, items: Iterable[FileItem]) -> Snapshot[FileItem]:
        items = tuple(items)
        return self.replace(lambda _: items)

    def prepend(self, item: FileItem) -> Snapshot[FileItem]:
        return self.replace(lambda items: (item, *(f for f in items if f.id != item.id)))

    def update(self, file_id: str, **changes) -> Snapshot[FileItem]:
        return self.replace(
            lambda items: (f.model_copy(update=changes) if f.id == file_id else f for f in items)
        )

    def remove(self, file_ids: Iterable[str]) -> Snapshot[FileItem]:
        doomed = set(file_ids)
        return self.replace(lambda items: (f for f in items if f.id not in doomed))

    def active(self) -> list[FileItem]:
        return [f for f in self._snapshot.items if not f.is_trashed]

    def trashed(self) -> list[FileItem]:
        return [f for f in self._snapshot.items if f.is_trashed]

    def used_bytes(self) -> int:
        return sum(f.file_size for f in self.active())


class UploadTaskStore(SnapshotStore[UploadTask]):
    """In-flight upload tasks shown in the progress panel."""

    def get(self, task_id: str) -> UploadTask | None:
        for task in self._snapshot.items:
            if task.task_id == task_id:
                return task
        return None

    def add(self, tasks: Iterable[UploadTask]) -> Snapshot[UploadTask]:
        tasks = tuple(tasks)
        return self.replace(lambda items: (*items, *tasks))

    def update(
        self, task_id: str, *, state: UploadState | None = None, progress: int | None = None,
        strategy: TransferStrategy | None = None,
    ) -> Snapshot[UploadTask]:
        return self.replace(
            lambda items: (
                t.advance(state=state, progress=progress, strategy=strategy) if t.task_id == task_id else t
                for t in items
            )
        )

    def remove(self, task_id: str) -> Snapshot[UploadTask]:
        return self.replace(lambda items: (t for t in items if t.task_id != task_id))
