"""tus 1.0.0 resumable upload transports.

`HttpTusTransport` talks to the storage service's resumable endpoint.
`LocalTusTransport` implements the same three calls on the local disk so the
resumable path also works with the local storage backend.
"""
import asyncio
import base64
import json
import logging
import uuid
from pathlib import Path
from typing import Optional, Protocol
from urllib.parse import urljoin, urlparse

import aiofiles
import aiofiles.os
import aiohttp

from skydrive.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)

TUS_VERSION = "1.0.0"
OFFSET_CONTENT_TYPE = "application/offset+octet-stream"

# Statuses worth retrying besides 5xx: offset conflicts, locked uploads, throttling
_RETRYABLE_STATUSES = {409, 423, 429}


class TusError(Exception):
    """A failed tus request. `status` is None for network-level failures."""

    def __init__(self, status: Optional[int], message: str):
        self.status = status
        self.message = message
        super().__init__(f"HTTP {status}: {message}" if status else message)

    @property
    def retryable(self) -> bool:
        return self.status is None or self.status >= 500 or self.status in _RETRYABLE_STATUSES

    @property
    def session_gone(self) -> bool:
        return self.status in (404, 410)


class TusTransport(Protocol):
    endpoint: str

    async def create(
        self, length: int, metadata: dict[str, str], headers: dict[str, str], first_chunk: bytes = b"",
    ) -> tuple[str, int]:
        """Open an upload session. Returns (upload url, offset after the first chunk)."""
        ...

    async def get_offset(self, upload_url: str, headers: dict[str, str]) -> int: ...

    async def append(self, upload_url: str, offset: int, chunk: bytes, headers: dict[str, str]) -> int:
        """Append a chunk at `offset`. Returns the new offset acknowledged by the server."""
        ...


def encode_metadata(metadata: dict[str, str]) -> str:
    return ",".join(
        f"{key} {base64.b64encode(value.encode()).decode()}" for key, value in metadata.items()
    )


def supabase_resumable_endpoint(supabase_url: str) -> Optional[str]:
    """The dedicated storage host: https://{project_ref}.storage.supabase.co/storage/v1/upload/resumable."""
    hostname = urlparse(supabase_url).hostname or ""
    project_ref = hostname.split(".")[0]
    if not project_ref:
        return None
    return f"https://{project_ref}.storage.supabase.co/storage/v1/upload/resumable"


class HttpTusTransport:
    def __init__(self, endpoint: str, request_timeout: float = 120):
        self.endpoint = endpoint
        self._timeout = aiohttp.ClientTimeout(total=None, sock_connect=30, sock_read=request_timeout)
        self._session: Optional[aiohttp.ClientSession] = None

    async def _client(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def close(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    async def _request(self, method: str, url: str, headers: dict[str, str], data: bytes | None = None):
        session = await self._client()
        headers = {**headers, "Tus-Resumable": TUS_VERSION}
        try:
            async with session.request(method, url, headers=headers, data=data) as resp:
                body = await resp.text() if resp.status >= 400 else ""
                if resp.status >= 400:
                    raise TusError(resp.status, body[:300] or resp.reason or "")
                return resp.status, dict(resp.headers)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TusError(None, f"Network error: {e}") from e

    async def create(
        self, length: int, metadata: dict[str, str], headers: dict[str, str], first_chunk: bytes = b"",
    ) -> tuple[str, int]:
        request_headers = {
            **headers,
            "Upload-Length": str(length),
            "Upload-Metadata": encode_metadata(metadata),
        }
        if first_chunk:
            request_headers["Content-Type"] = OFFSET_CONTENT_TYPE
        _, response_headers = await self._request("POST", self.endpoint, request_headers, first_chunk or None)
        location = response_headers.get("Location")
        if not location:
            raise TusError(None, "Upload created without a Location header")
        return urljoin(self.endpoint, location), int(response_headers.get("Upload-Offset", "0"))

    async def get_offset(self, upload_url: str, headers: dict[str, str]) -> int:
        _, response_headers = await self._request("HEAD", upload_url, headers)
        if "Upload-Offset" not in response_headers:
            raise TusError(None, "Upload-Offset missing from HEAD response")
        return int(response_headers["Upload-Offset"])

    async def append(self, upload_url: str, offset: int, chunk: bytes, headers: dict[str, str]) -> int:
        request_headers = {**headers, "Upload-Offset": str(offset), "Content-Type": OFFSET_CONTENT_TYPE}
        _, response_headers = await self._request("PATCH", upload_url, request_headers, chunk)
        return int(response_headers.get("Upload-Offset", offset + len(chunk)))


class LocalTusTransport:
    """Resumable sessions as `.part` files; published into the object root on completion."""

    def __init__(self, settings: Settings = default_settings):
        self.root = Path(settings.FILE_STORAGE_PATH)
        self.sessions = self.root / ".resumable"
        self.sessions.mkdir(parents=True, exist_ok=True)
        self.endpoint = f"local://{self.sessions.resolve()}"

    def _paths(self, upload_url: str) -> tuple[Path, Path]:
        upload_id = upload_url.rsplit("/", 1)[-1]
        return self.sessions / f"{upload_id}.part", self.sessions / f"{upload_id}.json"

    async def _info(self, upload_url: str) -> dict:
        _, info_path = self._paths(upload_url)
        if not info_path.exists():
            raise TusError(404, "Upload not found")
        async with aiofiles.open(info_path, "r") as f:
            return json.loads(await f.read())

    async def create(
        self, length: int, metadata: dict[str, str], headers: dict[str, str], first_chunk: bytes = b"",
    ) -> tuple[str, int]:
        upload_url = f"{self.endpoint}/{uuid.uuid4().hex}"
        part_path, info_path = self._paths(upload_url)
        async with aiofiles.open(info_path, "w") as f:
            await f.write(json.dumps({"length": length, "metadata": metadata, "upsert": headers.get("x-upsert") == "true"}))
        async with aiofiles.open(part_path, "wb") as f:
            await f.write(b"")
        offset = 0
        if first_chunk:
            offset = await self.append(upload_url, 0, first_chunk, headers)
        return upload_url, offset

    async def get_offset(self, upload_url: str, headers: dict[str, str]) -> int:
        await self._info(upload_url)
        part_path, _ = self._paths(upload_url)
        return part_path.stat().st_size if part_path.exists() else 0

    async def append(self, upload_url: str, offset: int, chunk: bytes, headers: dict[str, str]) -> int:
        info = await self._info(upload_url)
        part_path, info_path = self._paths(upload_url)
        current = part_path.stat().st_size
        if offset != current:
            raise TusError(409, f"Offset mismatch: expected {current}, got {offset}")
        async with aiofiles.open(part_path, "ab") as f:
            await f.write(chunk)
        new_offset = current + len(chunk)
        if new_offset >= info["length"]:
            await self._publish(part_path, info_path, info)
        return new_offset

    async def _publish(self, part_path: Path, info_path: Path, info: dict) -> None:
        target = self.root / info["metadata"]["objectName"]
        if target.exists() and not info.get("upsert"):
            raise TusError(400, f"The resource already exists: {info['metadata']['objectName']}")
        target.parent.mkdir(parents=True, exist_ok=True)
        await aiofiles.os.replace(part_path, target)
        await aiofiles.os.remove(info_path)
        logger.debug(f"Published resumable upload to {target}")
