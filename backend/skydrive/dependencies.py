"""FastAPI dependencies shared by the routers."""
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request

from skydrive.services.auth import Session
from skydrive.services.file_manager import FileManager


def get_file_manager(request: Request) -> FileManager:
    """The process-wide FileManager created in the app lifespan."""
    return request.app.state.file_manager


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def require_session(
    authorization: Optional[str] = Header(default=None),
    manager: FileManager = Depends(get_file_manager),
) -> Session:
    """The signed-in session, provided the caller presents that user's bearer token.

    The process holds one session at a time, so a request must authenticate as
    the same user it signed in as. Any other valid user gets 403.
    """
    token = _bearer_token(authorization)
    if token is None:
        raise HTTPException(status_code=401, detail="Missing bearer token",
                            headers={"WWW-Authenticate": "Bearer"})
    user = await manager.auth.get_user(token)
    if user is None:
        raise HTTPException(status_code=401, detail="Invalid or expired token",
                            headers={"WWW-Authenticate": "Bearer"})
    session = await manager.auth.get_session()
    if session is None:
        raise HTTPException(status_code=401, detail="Not signed in")
    if session.user.id != user.id:
        raise HTTPException(status_code=403, detail="Signed in as a different user")
    return session
