"""Auth API - thin wrapper over the auth provider."""
from fastapi import APIRouter, Depends, HTTPException

from skydrive.dependencies import get_file_manager, require_session
from skydrive.schemas.auth import LoginRequest, SessionResponse, SignupRequest
from skydrive.services.auth import Session
from skydrive.services.file_manager import FileManager

router = APIRouter(prefix="/api/auth", tags=["auth"])


def _session_response(session: Session) -> dict:
    return {
        "user_id": session.user.id,
        "email": session.user.email,
        "name": session.user.name,
        "access_token": session.access_token,
        "expires_at": session.expires_at,
    }


@router.get("/session", response_model=SessionResponse)
async def get_session(session: Session = Depends(require_session)):
    """Current signed-in user."""
    return _session_response(session)


@router.post("/login", response_model=SessionResponse)
async def login(body: LoginRequest, manager: FileManager = Depends(get_file_manager)):
    """Sign in with email and password."""
    result = await manager.auth.sign_in(body.email, body.password)
    if not result.ok or result.session is None:
        manager.notifier.error(result.error or "Sign in failed")
        raise HTTPException(401, result.error or "Sign in failed")
    return _session_response(result.session)


@router.post("/signup", status_code=201)
async def signup(body: SignupRequest, manager: FileManager = Depends(get_file_manager)):
    """Create an account. Usually requires confirming the email first."""
    result = await manager.auth.sign_up(body.email, body.password, body.name)
    if not result.ok:
        manager.notifier.error(result.error or "Sign up failed")
        raise HTTPException(400, result.error or "Sign up failed")
    manager.notifier.success("Check your email for the confirmation link!")
    return {"created": True, "signedIn": result.session is not None}


@router.post("/logout", dependencies=[Depends(require_session)])
async def logout(manager: FileManager = Depends(get_file_manager)):
    await manager.auth.sign_out()
    return {"signedOut": True}
