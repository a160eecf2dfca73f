"""Pytest configuration and fixtures for skydrive tests."""

import asyncio
import uuid
from datetime import datetime, timezone
from typing import Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from skydrive.config import Settings
from skydrive.database import build_engine, create_tables
from skydrive.errors import StoreWriteError
from skydrive.schemas.file import FileItem
from skydrive.services.auth import SIGNED_IN, SIGNED_OUT, AuthResult, Session, User
from skydrive.services.file_manager import FileManager
from skydrive.services.metadata_store import MetadataStore
from skydrive.services.uploads.tus import TusError

MiB = 1024 * 1024


def make_session(user_id: str = "u1", token: str = "access-token") -> Session:
    return Session(
        access_token=token,
        refresh_token="refresh-token",
        user=User(id=user_id, email=f"{user_id}@example.com", name=user_id),
    )


class FakeAuth:
    """In-memory auth provider. Password "secret" signs in, anything else fails.

    Every token ever issued stays resolvable through `get_user`, like a JWT
    that outlives the local session.
    """

    def __init__(self, session: Optional[Session] = None):
        self.session = session
        self.tokens: dict[str, User] = {}
        self._listeners = []
        if session is not None:
            self.tokens[session.access_token] = session.user

    async def get_session(self) -> Optional[Session]:
        return self.session

    async def sign_in(self, email: str, password: str) -> AuthResult:
        if password != "secret":
            return AuthResult(ok=False, error="Invalid login credentials")
        user_id = email.split("@")[0]
        await self.emit(SIGNED_IN, make_session(user_id, token=f"{user_id}-token"))
        return AuthResult(ok=True, session=self.session)

    async def sign_up(self, email: str, password: str, name: str) -> AuthResult:
        return AuthResult(ok=True)

    async def sign_out(self) -> None:
        await self.emit(SIGNED_OUT, None)

    async def get_user(self, access_token: str) -> Optional[User]:
        return self.tokens.get(access_token)

    def on_auth_state_change(self, listener):
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    async def emit(self, event: str, session: Optional[Session]) -> None:
        self.session = session
        if session is not None:
            self.tokens[session.access_token] = session.user
        for listener in list(self._listeners):
            await listener(event, session)


class FakeObjectStore:
    """Object store held in a dict. Knobs control latency and failures."""

    def __init__(self):
        self.objects: dict[str, bytes] = {}
        self.put_delay = 0.0
        self.delay_for: dict[bytes, float] = {}
        self.rejected: set[bytes] = set()
        self.fail_remove: set[str] = set()
        self.remove_error: Optional[Exception] = None
        self.remove_calls: list[list[str]] = []

    async def put(self, path: str, data: bytes, *, overwrite: bool = False, content_type: str = "") -> None:
        delay = self.delay_for.get(data, self.put_delay)
        if delay:
            await asyncio.sleep(delay)
        if data in self.rejected:
            raise StoreWriteError("Storage upload rejected (HTTP 403): new row violates policy")
        if path in self.objects and not overwrite:
            raise StoreWriteError(f"The resource already exists: {path}")
        self.objects[path] = data

    async def remove(self, paths: list[str]) -> list[str]:
        self.remove_calls.append(list(paths))
        if self.remove_error is not None:
            raise self.remove_error
        failed = [p for p in paths if p in self.fail_remove]
        for path in paths:
            if path not in failed:
                self.objects.pop(path, None)
        return failed

    async def create_signed_url(self, path: str, ttl_seconds: int) -> str:
        if path not in self.objects:
            raise StoreWriteError(f"Object not found: {path}")
        return f"https://cdn.test/sign/{path}?ttl={ttl_seconds}"

    def get_public_url(self, path: str) -> str:
        return f"https://cdn.test/public/{path}"


class FakeTusTransport:
    """tus server in memory.

    `failures` is consumed one entry per append call: a TusError entry is
    raised, a None entry lets that append through.
    """

    endpoint = "https://tus.test/upload/resumable"

    def __init__(self):
        self.sessions: dict[str, dict] = {}
        self.created: list[str] = []
        self.chunk_sizes: list[int] = []
        self.headers_seen: list[dict] = []
        self.failures: list[Optional[TusError]] = []

    async def create(self, length, metadata, headers, first_chunk=b""):
        self.headers_seen.append(headers)
        url = f"{self.endpoint}/{len(self.created) + 1}"
        self.sessions[url] = {"length": length, "metadata": metadata, "data": bytearray()}
        self.created.append(url)
        offset = self._write(url, 0, first_chunk) if first_chunk else 0
        return url, offset

    async def get_offset(self, upload_url, headers):
        if upload_url not in self.sessions:
            raise TusError(404, "Upload not found")
        return len(self.sessions[upload_url]["data"])

    async def append(self, upload_url, offset, chunk, headers):
        if self.failures:
            failure = self.failures.pop(0)
            if failure is not None:
                raise failure
        if upload_url not in self.sessions:
            raise TusError(404, "Upload not found")
        return self._write(upload_url, offset, chunk)

    def _write(self, upload_url: str, offset: int, chunk: bytes) -> int:
        data = self.sessions[upload_url]["data"]
        if offset != len(data):
            raise TusError(409, f"Offset mismatch: expected {len(data)}, got {offset}")
        data.extend(chunk)
        self.chunk_sizes.append(len(chunk))
        return len(data)


@pytest.fixture
def test_settings(tmp_path):
    """Settings with tiny timers so orchestration tests run fast."""
    return Settings(
        DATABASE_URL="sqlite+aiosqlite://",
        STORAGE_BACKEND="local",
        FILE_STORAGE_PATH=str(tmp_path / "objects"),
        LOCAL_PUBLIC_URL="http://testserver/storage",
        SUPABASE_ANON_KEY="anon-key",
        RESUMABLE_FINGERPRINT_PATH=str(tmp_path / "fingerprints.json"),
        RESUMABLE_RETRY_DELAYS=[0, 0, 0],
        STANDARD_UPLOAD_TIMEOUT=2.0,
        PROGRESS_TICK_INTERVAL=0.01,
        UPLOAD_TASK_LINGER=0,
        SHARE_ORIGIN="https://drive.test",
        UPLOAD_SPOOL_PATH=str(tmp_path / "incoming"),
    )


@pytest.fixture
def auth():
    return FakeAuth(make_session("u1"))


@pytest.fixture
def object_store():
    return FakeObjectStore()


@pytest.fixture
def tus_transport():
    return FakeTusTransport()


@pytest_asyncio.fixture
async def metadata():
    """MetadataStore on a fresh in-memory SQLite database."""
    engine = build_engine("sqlite+aiosqlite://", poolclass=StaticPool)
    await create_tables(engine)
    yield MetadataStore(async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False))
    await engine.dispose()


@pytest_asyncio.fixture
async def manager(auth, object_store, metadata, tus_transport, test_settings):
    file_manager = FileManager(auth, object_store, metadata, tus_transport, test_settings)
    yield file_manager
    await file_manager.close()


@pytest.fixture
def make_item():
    """Factory for FileItem values that never touch the database."""
    counter = iter(range(1, 10_000))

    def _make(**overrides) -> FileItem:
        n = next(counter)
        values = {
            "id": f"file-{n}",
            "user_id": "u1",
            "file_name": f"file-{n}.txt",
            "file_path": f"u1/{n}_path.txt",
            "file_size": 100,
            "mime_type": "text/plain",
            "uploaded_at": datetime(2024, 1, 1, tzinfo=timezone.utc),
        }
        values.update(overrides)
        return FileItem(**values)

    return _make


@pytest.fixture
def seed(manager, object_store):
    """Insert rows (and their bytes) for u1, then load them into the shared list."""

    async def _seed(*names: str, trashed: bool = False, size: int = 100) -> list[FileItem]:
        items = []
        for name in names:
            path = f"u1/{uuid.uuid4().hex}_{name}"
            object_store.objects[path] = b"x" * size
            items.append(await manager.metadata.insert_file({
                "user_id": "u1",
                "file_name": name,
                "file_path": path,
                "file_size": size,
                "mime_type": "text/plain",
                "is_trashed": trashed,
                "trashed_at": datetime.now(timezone.utc) if trashed else None,
            }))
        manager.files.reset(await manager.metadata.list_files("u1"))
        return items

    return _seed
