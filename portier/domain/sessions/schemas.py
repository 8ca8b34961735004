"""Pydantic schemas for login, registration and session management."""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

USERNAME_PATTERN = r"^[A-Za-z][A-Za-z0-9_.]{2,49}$"


class LoginRequest(BaseModel):
    identifier: str = ""
    password: str = ""
    device_name: Optional[str] = None
    device_type: Optional[str] = None
    user_agent: Optional[str] = None
    redirect_url: Optional[str] = Field(default=None, alias="redirectUrl")

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("identifier")
    @classmethod
    def _strip_identifier(cls, value: str) -> str:
        return value.strip()


class RegisterRequest(BaseModel):
    verification_token: str = Field(alias="verificationToken", min_length=1)
    password: str = Field(min_length=8, max_length=128)
    username: Optional[str] = Field(default=None, pattern=USERNAME_PATTERN)
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)
    language: Optional[str] = None
    device_name: Optional[str] = None
    device_type: Optional[str] = None
    user_agent: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("username", "first_name", "last_name", mode="before")
    @classmethod
    def _strip_names(cls, value):
        # The password is taken exactly as typed; only names are trimmed.
        if isinstance(value, str):
            return value.strip() or None
        return value


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(alias="currentPassword", min_length=1)
    new_password: str = Field(alias="newPassword", min_length=8, max_length=128)

    model_config = ConfigDict(populate_by_name=True)


class AccountOut(BaseModel):
    id: int
    email: Optional[str] = None
    phone: Optional[str] = None
    username: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    profile_avatar_url: Optional[str] = None
    role: str
    email_verified: bool
    phone_verified: bool
    preferred_language: Optional[str] = None
    last_login_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class SessionOut(BaseModel):
    id: int
    device_name: Optional[str] = None
    device_type: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    login_time: datetime
    last_activity: Optional[datetime] = None
    token_expires: datetime
    is_active: bool
    logout_time: Optional[datetime] = None
    is_current: bool = False

    model_config = ConfigDict(from_attributes=True)


class LoginResponse(BaseModel):
    success: bool = True
    message: str
    user: AccountOut
    session: SessionOut
    redirect_url: str = Field(alias="redirectUrl")
    is_new_device: bool = Field(default=False, alias="isNewDevice")

    model_config = ConfigDict(populate_by_name=True)


class MeResponse(BaseModel):
    user: AccountOut
    sessions: list[SessionOut]


class MessageResponse(BaseModel):
    success: bool = True
    message: str
