"""Auth request/response schemas."""
from typing import Optional
from skydrive.schemas.base import CamelModel


class LoginRequest(CamelModel):
    email: str
    password: str


class SignupRequest(CamelModel):
    name: str
    email: str
    password: str


class SessionResponse(CamelModel):
    user_id: str
    email: str
    name: str
    access_token: str
    expires_at: Optional[float] = None
