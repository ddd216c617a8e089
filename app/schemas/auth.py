from datetime import datetime
from typing import Optional

from pydantic import BaseModel, EmailStr, Field


# Request schemas
class LoginRequest(BaseModel):
    email: EmailStr
    password: str
    device_name: Optional[str] = Field(None, max_length=255)


class RefreshTokenRequest(BaseModel):
    refresh_token: str


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = None
    revoke_all: bool = False  # Revoke every session of the user


class ChangePasswordRequest(BaseModel):
    current_password: str
    new_password: str = Field(..., min_length=8, max_length=128)


# Response schemas
class UserResponse(BaseModel):
    id: int
    email: str
    name: str
    is_admin: bool
    created_at: datetime

    model_config = {"from_attributes": True}


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    refresh_expires_at: datetime


class AuthResponse(TokenResponse):
    user: UserResponse


class SessionResponse(BaseModel):
    jti: str
    device_id: str
    device_name: str
    device_type: str
    ip_address: str
    platform: Optional[str]
    browser: Optional[str]
    created_at: Optional[datetime]
    last_used_at: Optional[datetime]
    expires_at: datetime
    current: bool = False


class LogoutResponse(BaseModel):
    message: str
    sessions_revoked: int = 0


class CsrfTokenResponse(BaseModel):
    csrf_token: str
    expires_in: int
