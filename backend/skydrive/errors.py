"""Error kinds raised by the upload and lifecycle services.

Adapters translate library exceptions into these at their boundary; the
upload coordinator and lifecycle machine turn them into notifications.
"""


class SkyDriveError(Exception):
    """Base class. `kind` is a stable identifier for logs and API payloads."""

    kind = "error"

    def __init__(self, message: str = ""):
        self.message = message
        super().__init__(message)


class PreconditionError(SkyDriveError):
    """Missing credential or configuration. Never retried."""

    kind = "precondition"


class UploadTimeoutError(SkyDriveError, TimeoutError):
    """Standard transfer exceeded its deadline."""

    kind = "timeout"


class TransferFailedError(SkyDriveError):
    """Resumable transfer gave up after exhausting its retries."""

    kind = "transfer_failed"


class StoreWriteError(SkyDriveError):
    """Metadata or object store rejected a write."""

    kind = "store_write_failed"


class NotFoundError(SkyDriveError):
    """Operation on an id that is not known."""

    kind = "not_found"


def safe_error_message(e: BaseException, fallback: str = "Unexpected error") -> str:
    """Extract a meaningful error message from an exception.

    Some exceptions (cancellation, bare TimeoutError) produce an empty str(e).
    This helper falls back to the exception class name.
    """
    msg = str(e).strip()
    if not msg:
        msg = f"{type(e).__name__}: {fallback}"
    return msg
