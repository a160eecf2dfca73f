"""Object storage abstraction. Local filesystem for dev, Supabase Storage for production.

Objects are addressed only by their storage path (`{owner}/{ms}_{uuid}{.ext}`).
"""
import hashlib
import hmac
import logging
import secrets
import time
from pathlib import Path
from typing import Awaitable, Callable, Optional, Protocol
from urllib.parse import quote, urlencode

import aiofiles
import aiofiles.os
import aiohttp

from skydrive.config import Settings, settings as default_settings
from skydrive.errors import PreconditionError, StoreWriteError

logger = logging.getLogger(__name__)

TokenProvider = Callable[[], Awaitable[Optional[str]]]


class ObjectStore(Protocol):
    async def put(self, path: str, data: bytes, *, overwrite: bool = False, content_type: str = "") -> None: ...

    async def remove(self, paths: list[str]) -> list[str]:
        """Remove objects. Returns the paths that could not be removed."""
        ...

    async def create_signed_url(self, path: str, ttl_seconds: int) -> str: ...

    def get_public_url(self, path: str) -> str: ...


class LocalObjectStore:
    """Stores objects as files under FILE_STORAGE_PATH.

    Every URL it hands out carries an HMAC token that the /storage route checks
    before serving the file. Signed URLs also carry an expiry; public URLs
    (used for thumbnails) do not expire. Without LOCAL_SIGNING_SECRET the key
    is random per process, so URLs stop working after a restart.
    """

    def __init__(self, settings: Settings = default_settings):
        self.base_path = Path(settings.FILE_STORAGE_PATH)
        self.base_path.mkdir(parents=True, exist_ok=True)
        self.public_url = settings.LOCAL_PUBLIC_URL.rstrip("/")
        self._secret = (settings.LOCAL_SIGNING_SECRET or secrets.token_hex(32)).encode()

    def resolve(self, path: str) -> Path:
        target = (self.base_path / path).resolve()
        if self.base_path.resolve() not in target.parents:
            raise StoreWriteError(f"Invalid storage path: {path}")
        return target

    async def put(self, path: str, data: bytes, *, overwrite: bool = False, content_type: str = "") -> None:
        target = self.resolve(path)
        if not overwrite and target.exists():
            raise StoreWriteError(f"The resource already exists: {path}")
        target.parent.mkdir(parents=True, exist_ok=True)
        try:
            async with aiofiles.open(target, "wb" if overwrite else "xb") as f:
                await f.write(data)
        except FileExistsError:
            raise StoreWriteError(f"The resource already exists: {path}")
        except OSError as e:
            raise StoreWriteError(f"Failed to write {path}: {e}") from e

    async def remove(self, paths: list[str]) -> list[str]:
        failed = []
        for path in paths:
            try:
                target = self.resolve(path)
                if target.exists():
                    await aiofiles.os.remove(target)
            except (OSError, StoreWriteError) as e:
                logger.warning(f"Could not remove {path}: {e}")
                failed.append(path)
        return failed

    async def create_signed_url(self, path: str, ttl_seconds: int) -> str:
        if not self.resolve(path).exists():
            raise StoreWriteError(f"Object not found: {path}")
        expires = int(time.time()) + ttl_seconds
        query = urlencode({"expires": expires, "token": self._sign(path, expires)})
        return f"{self.public_url}/{quote(path)}?{query}"

    def get_public_url(self, path: str) -> str:
        return f"{self.public_url}/{quote(path)}?token={self._sign(path, None)}"

    def _sign(self, path: str, expires: Optional[int]) -> str:
        message = f"public:{path}" if expires is None else f"signed:{expires}:{path}"
        return hmac.new(self._secret, message.encode(), hashlib.sha256).hexdigest()

    def verify(self, path: str, token: Optional[str], expires: Optional[int] = None) -> bool:
        """Check a token from one of our URLs. Expired signed URLs fail."""
        if not token:
            return False
        if expires is not None and expires < time.time():
            return False
        return hmac.compare_digest(self._sign(path, expires).encode(), token.encode())


class SupabaseObjectStore:
    """Talks to the Supabase Storage REST API with the signed-in user's token."""

    def __init__(self, token_provider: TokenProvider, settings: Settings = default_settings):
        if not settings.SUPABASE_URL or not settings.SUPABASE_ANON_KEY:
            raise PreconditionError("SUPABASE_URL and SUPABASE_ANON_KEY must be set for supabase storage")
        self.base_url = f"{settings.SUPABASE_URL.rstrip('/')}/storage/v1"
        self.anon_key = settings.SUPABASE_ANON_KEY
        self.bucket = settings.STORAGE_BUCKET
        self._token_provider = token_provider
        self._session: Optional[aiohttp.ClientSession] = None

    async def _client(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def close(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    async def _headers(self) -> dict:
        token = await self._token_provider()
        return {"apikey": self.anon_key, "Authorization": f"Bearer {token or self.anon_key}"}

    async def put(self, path: str, data: bytes, *, overwrite: bool = False, content_type: str = "") -> None:
        headers = await self._headers()
        headers["x-upsert"] = "true" if overwrite else "false"
        headers["Content-Type"] = content_type or "application/octet-stream"
        headers["cache-control"] = "max-age=3600"
        url = f"{self.base_url}/object/{self.bucket}/{quote(path)}"
        session = await self._client()
        try:
            async with session.post(url, data=data, headers=headers) as resp:
                if resp.status >= 400:
                    body = await resp.text()
                    raise StoreWriteError(f"Storage upload rejected (HTTP {resp.status}): {body[:300]}")
        except aiohttp.ClientError as e:
            raise StoreWriteError(f"Storage upload failed: {e}") from e

    async def remove(self, paths: list[str]) -> list[str]:
        if not paths:
            return []
        session = await self._client()
        try:
            async with session.delete(
                f"{self.base_url}/object/{self.bucket}",
                json={"prefixes": paths},
                headers=await self._headers(),
            ) as resp:
                if resp.status >= 400:
                    body = await resp.text()
                    raise StoreWriteError(f"Storage remove rejected (HTTP {resp.status}): {body[:300]}")
                removed = {obj.get("name") for obj in await resp.json()}
        except aiohttp.ClientError as e:
            raise StoreWriteError(f"Storage remove failed: {e}") from e
        return [p for p in paths if p not in removed]

    async def create_signed_url(self, path: str, ttl_seconds: int) -> str:
        session = await self._client()
        try:
            async with session.post(
                f"{self.base_url}/object/sign/{self.bucket}/{quote(path)}",
                json={"expiresIn": ttl_seconds},
                headers=await self._headers(),
            ) as resp:
                if resp.status >= 400:
                    body = await resp.text()
                    raise StoreWriteError(f"Could not sign URL (HTTP {resp.status}): {body[:300]}")
                payload = await resp.json()
        except aiohttp.ClientError as e:
            raise StoreWriteError(f"Could not sign URL: {e}") from e
        return f"{self.base_url}{payload['signedURL']}"

    def get_public_url(self, path: str) -> str:
        return f"{self.base_url}/object/public/{self.bucket}/{quote(path)}"


def build_object_store(token_provider: TokenProvider, settings: Settings = default_settings) -> ObjectStore:
    if settings.STORAGE_BACKEND == "local":
        return LocalObjectStore(settings)
    if settings.STORAGE_BACKEND == "supabase":
        return SupabaseObjectStore(token_provider, settings)
    raise ValueError(f"Unknown storage backend: {settings.STORAGE_BACKEND}")
