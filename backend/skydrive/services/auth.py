"""Async auth client for the hosted platform (Supabase GoTrue REST API).

Holds the current session in memory, refreshes the access token when it is
about to expire and notifies subscribers on every auth state change.
"""
import asyncio
import hmac
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Protocol, Union

import aiohttp

from skydrive.config import Settings, settings as default_settings
from skydrive.errors import PreconditionError

logger = logging.getLogger(__name__)

SIGNED_IN = "SIGNED_IN"
SIGNED_OUT = "SIGNED_OUT"
TOKEN_REFRESHED = "TOKEN_REFRESHED"

# Refresh a little before the server-side expiry
_EXPIRY_MARGIN_SECONDS = 30


@dataclass(frozen=True)
class User:
    id: str
    email: str
    name: str
    avatar: Optional[str] = None


@dataclass(frozen=True)
class Session:
    access_token: str
    user: User
    refresh_token: Optional[str] = None
    expires_at: Optional[float] = None

    @property
    def expired(self) -> bool:
        return self.expires_at is not None and time.time() >= self.expires_at - _EXPIRY_MARGIN_SECONDS


@dataclass(frozen=True)
class AuthResult:
    ok: bool
    error: Optional[str] = None
    session: Optional[Session] = None


AuthListener = Callable[[str, Optional[Session]], Union[Awaitable[None], None]]


class AuthProvider(Protocol):
    async def get_session(self) -> Optional[Session]: ...

    async def sign_in(self, email: str, password: str) -> AuthResult: ...

    async def sign_up(self, email: str, password: str, name: str) -> AuthResult: ...

    async def sign_out(self) -> None: ...

    async def get_user(self, access_token: str) -> Optional[User]: ...

    def on_auth_state_change(self, listener: AuthListener) -> Callable[[], None]: ...


class AuthAPIError(Exception):
    """Rich error from auth API calls - carries status and message."""

    def __init__(self, status: int, message: str):
        self.status = status
        self.message = message
        super().__init__(f"HTTP {status}: {message}" if status else message)


def _user_from_payload(user: dict) -> User:
    metadata = user.get("user_metadata") or {}
    email = user.get("email") or ""
    return User(
        id=user.get("id", ""),
        email=email,
        name=metadata.get("name") or email.split("@")[0] or "User",
        avatar=metadata.get("avatar_url"),
    )


def _session_from_payload(payload: dict) -> Session:
    expires_at = payload.get("expires_at")
    if expires_at is None and payload.get("expires_in"):
        expires_at = time.time() + float(payload["expires_in"])
    return Session(
        access_token=payload["access_token"],
        refresh_token=payload.get("refresh_token"),
        expires_at=float(expires_at) if expires_at is not None else None,
        user=_user_from_payload(payload.get("user") or {}),
    )


class SupabaseAuth:
    """GoTrue client.

    Supports async context manager for connection pooling. Falls back to a
    lazily created session if used without ``async with``.
    """

    def __init__(self, settings: Settings = default_settings):
        if not settings.SUPABASE_URL or not settings.SUPABASE_ANON_KEY:
            raise PreconditionError("SUPABASE_URL and SUPABASE_ANON_KEY must be set")
        self.base_url = f"{settings.SUPABASE_URL.rstrip('/')}/auth/v1"
        self.anon_key = settings.SUPABASE_ANON_KEY
        self._session: Optional[Session] = None
        self._http: Optional[aiohttp.ClientSession] = None
        self._listeners: list[AuthListener] = []
        self._refresh_lock = asyncio.Lock()

    async def open(self) -> None:
        if not self._http:
            self._http = aiohttp.ClientSession()

    async def close(self) -> None:
        if self._http:
            await self._http.close()
            self._http = None

    async def __aenter__(self) -> "SupabaseAuth":
        await self.open()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    async def _post(self, path: str, body: dict, *, token: Optional[str] = None) -> dict:
        await self.open()
        headers = {"apikey": self.anon_key, "Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        try:
            async with self._http.post(f"{self.base_url}{path}", json=body, headers=headers) as resp:
                try:
                    payload = await resp.json(content_type=None) or {}
                except ValueError:
                    payload = {}
                if resp.status >= 400:
                    message = (
                        payload.get("error_description") or payload.get("msg")
                        or payload.get("message") or resp.reason
                    )
                    raise AuthAPIError(resp.status, str(message))
                return payload
        except aiohttp.ClientError as e:
            raise AuthAPIError(0, f"Network error: {e}") from e

    async def get_session(self) -> Optional[Session]:
        """Current session, refreshed first if its access token has expired."""
        if self._session is None or not self._session.expired:
            return self._session
        async with self._refresh_lock:
            session = self._session
            if session is None or not session.expired:
                return session
            if not session.refresh_token:
                await self._set_session(None, SIGNED_OUT)
                return None
            try:
                payload = await self._post(
                    "/token?grant_type=refresh_token", {"refresh_token": session.refresh_token},
                )
            except AuthAPIError as e:
                logger.warning(f"Token refresh failed, signing out: {e}")
                await self._set_session(None, SIGNED_OUT)
                return None
            await self._set_session(_session_from_payload(payload), TOKEN_REFRESHED)
            return self._session

    async def sign_in(self, email: str, password: str) -> AuthResult:
        try:
            payload = await self._post("/token?grant_type=password", {"email": email, "password": password})
        except AuthAPIError as e:
            logger.info(f"Sign-in failed for {email}: {e.message}")
            return AuthResult(ok=False, error=e.message)
        session = _session_from_payload(payload)
        await self._set_session(session, SIGNED_IN)
        return AuthResult(ok=True, session=session)

    async def sign_up(self, email: str, password: str, name: str) -> AuthResult:
        try:
            payload = await self._post("/signup", {"email": email, "password": password, "data": {"name": name}})
        except AuthAPIError as e:
            return AuthResult(ok=False, error=e.message)
        # With email confirmation enabled there is no session until the link is followed
        if payload.get("access_token"):
            session = _session_from_payload(payload)
            await self._set_session(session, SIGNED_IN)
            return AuthResult(ok=True, session=session)
        return AuthResult(ok=True)

    async def sign_out(self) -> None:
        session = self._session
        if session is not None:
            try:
                await self._post("/logout", {}, token=session.access_token)
            except AuthAPIError as e:
                logger.warning(f"Remote sign-out failed, clearing local session anyway: {e}")
        await self._set_session(None, SIGNED_OUT)

    async def get_user(self, access_token: str) -> Optional[User]:
        """Resolve a caller's bearer token to its user, or None if the token is not valid."""
        if not access_token:
            return None
        session = self._session
        if session is not None and hmac.compare_digest(session.access_token, access_token):
            return session.user
        await self.open()
        headers = {"apikey": self.anon_key, "Authorization": f"Bearer {access_token}"}
        try:
            async with self._http.get(f"{self.base_url}/user", headers=headers) as resp:
                if resp.status >= 400:
                    return None
                payload = await resp.json(content_type=None) or {}
        except (aiohttp.ClientError, ValueError) as e:
            logger.warning(f"Token lookup failed: {e}")
            return None
        return _user_from_payload(payload) if payload.get("id") else None

    def on_auth_state_change(self, listener: AuthListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def _set_session(self, session: Optional[Session], event: str) -> None:
        self._session = session
        for listener in list(self._listeners):
            try:
                result = listener(event, session)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error(f"Auth listener failed on {event}: {e}")
