"""Pydantic schemas for the identifier-first steps of sign-in."""
from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

IdentifierType = Literal["email", "phone", "username"]


class CheckIdentifierRequest(BaseModel):
    identifier: str = ""
    language: Optional[str] = None

    model_config = ConfigDict(str_strip_whitespace=True)


class VerifyCodeRequest(BaseModel):
    identifier: str = ""
    code: str = ""
    identifier_type: Optional[IdentifierType] = Field(default=None, alias="identifierType")

    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)


class ResendVerificationRequest(BaseModel):
    identifier: str = ""
    identifier_type: Optional[IdentifierType] = Field(default=None, alias="identifierType")
    language: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AccountSummary(BaseModel):
    """What check-identifier may reveal about an existing account."""

    first_name: Optional[str] = None
    profile_avatar_url: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class CheckIdentifierResponse(CamelModel):
    exists: bool
    is_verified: bool
    identifier_type: IdentifierType
    next_step: Literal["code", "password", "createAccount"]
    user: Optional[AccountSummary] = None
    resend_delay: Optional[int] = None


class VerifyCodeResponse(CamelModel):
    verified: bool
    next_step: Literal["password", "createAccount"]
    verification_token: Optional[str] = None


class ResendVerificationResponse(CamelModel):
    success: bool
    resend_delay: int
    message: str
