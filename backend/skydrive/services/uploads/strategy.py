"""Transfer strategy selection and storage key allocation."""
import time
import uuid
from pathlib import PurePosixPath

from skydrive.services.uploads.models import TransferStrategy

RESUMABLE_THRESHOLD_BYTES = 20 * 1024 * 1024


def select_strategy(size_bytes: int, threshold: int = RESUMABLE_THRESHOLD_BYTES) -> TransferStrategy:
    """Files up to and including the threshold go in one request."""
    if size_bytes <= threshold:
        return TransferStrategy.STANDARD
    return TransferStrategy.RESUMABLE


def build_storage_path(owner_id: str, original_name: str, now_ms: int | None = None) -> str:
    """Allocate a fresh object key: `{owner}/{unix_ms}_{uuid}{.ext}`.

    Keys are never reused, even after the object is deleted.
    """
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    suffix = PurePosixPath(original_name).suffix.lower()
    if suffix == ".":
        suffix = ""
    return f"{owner_id}/{now_ms}_{uuid.uuid4()}{suffix}"
