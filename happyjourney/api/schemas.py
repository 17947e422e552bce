from __future__ import annotations

from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

_VALID_ERROR_CODES = {
    "validation_error",
    "unauthorized",
    "forbidden",
    "not_found",
    "conflict",
    "rate_limited",
    "server_error",
}

OtpPurpose = Literal["email_verification", "password_reset"]


class ErrorBody(BaseModel):
    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(f"unknown error code {value!r}")
        return value


class ErrorEnvelope(BaseModel):
    status: Literal["error"] = "error"
    error: ErrorBody


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)


def _strip_email(value: str) -> str:
    return value.strip().lower()


class RegisterRequest(_CamelModel):
    email: str = Field(..., min_length=3, max_length=254)
    password: str = Field(..., max_length=256)
    name: str = Field(..., min_length=1, max_length=120)
    phone: Optional[str] = Field(default=None, max_length=32)

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        return _strip_email(value)


class SendOtpRequest(_CamelModel):
    email: str = Field(..., min_length=3, max_length=254)
    type: OtpPurpose = "email_verification"


class VerifyOtpRequest(_CamelModel):
    email: str = Field(..., min_length=3, max_length=254)
    otp: str = Field(..., max_length=12)
    type: OtpPurpose = "email_verification"


class ResetPasswordRequest(_CamelModel):
    reset_token: str = Field(..., alias="resetToken", max_length=4096)
    password: str = Field(..., max_length=256)


class LoginRequest(_CamelModel):
    email: str = Field(..., min_length=1, max_length=254)
    password: str = Field(..., min_length=1, max_length=256)


class GoogleLoginRequest(_CamelModel):
    id_token: str = Field(..., alias="idToken", min_length=1, max_length=8192)


class ProfileUpdateRequest(_CamelModel):
    name: Optional[str] = Field(default=None, max_length=120)
    phone: Optional[str] = Field(default=None, max_length=32)
    bio: Optional[str] = Field(default=None, max_length=2000)
    profile_image: Optional[str] = Field(default=None, alias="profileImage", max_length=2048)


class VoteRequest(_CamelModel):
    resource_type: Optional[str] = Field(default=None, alias="resourceType")
    resource_id: Optional[str] = Field(default=None, alias="resourceId")
