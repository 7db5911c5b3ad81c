"""Pydantic schemas used for request and response models."""

from datetime import datetime
from typing import Annotated, Any
from uuid import UUID

from pydantic import (
    BaseModel,
    ConfigDict,
    EmailStr,
    Field,
    StringConstraints,
    field_validator,
    model_validator,
)
from pydantic_core import PydanticCustomError

# Strength rules live in the service layer so every entry point reports them
# the same way; the schema only bounds the size handed to bcrypt.
Password = Annotated[str, StringConstraints(min_length=1, max_length=255)]
TokenValue = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=512)]
ShortName = Annotated[str, StringConstraints(strip_whitespace=True, max_length=100)]


class RegisterRequest(BaseModel):
    """Payload accepted by the registration endpoint."""

    email: EmailStr = Field(..., max_length=255)
    password: Password
    first_name: ShortName | None = Field(None, alias="firstName")
    last_name: ShortName | None = Field(None, alias="lastName")
    company_name: Annotated[str, StringConstraints(strip_whitespace=True, max_length=255)] | None = Field(
        None, alias="companyName"
    )

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    @model_validator(mode="after")
    def _require_a_name(self) -> "RegisterRequest":
        if not (self.first_name or self.last_name):
            raise PydanticCustomError(
                "name_required",
                "First name or last name is required",
            )
        return self


class LoginRequest(BaseModel):
    email: EmailStr = Field(..., max_length=255)
    password: Password

    model_config = ConfigDict(extra="forbid")


class EmailRequest(BaseModel):
    """Payload for the enumeration-safe email-only endpoints."""

    email: EmailStr = Field(..., max_length=255)

    model_config = ConfigDict(extra="forbid")


class ResendVerificationRequest(BaseModel):
    """Signed-in callers may omit ``email``; their session identifies them."""

    email: EmailStr | None = Field(None, max_length=255)

    model_config = ConfigDict(extra="forbid")


class TokenRequest(BaseModel):
    token: TokenValue

    model_config = ConfigDict(extra="forbid")


class ResetPasswordRequest(BaseModel):
    token: TokenValue
    password: Password
    confirm_password: Password = Field(..., alias="confirmPassword")

    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class ChangePasswordRequest(BaseModel):
    current_password: Password = Field(..., alias="currentPassword")
    new_password: Password = Field(..., alias="newPassword")
    confirm_password: Password = Field(..., alias="confirmPassword")

    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class MessageResponse(BaseModel):
    success: bool = True
    message: str


class PrincipalRead(BaseModel):
    """Account summary returned to its owner."""

    id: UUID
    email: str
    role: str
    first_name: str | None = Field(None, alias="firstName")
    last_name: str | None = Field(None, alias="lastName")
    company_name: str | None = Field(None, alias="companyName")
    email_verified: bool = Field(False, alias="emailVerified")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_user(cls, user: Any) -> "PrincipalRead":
        return cls(
            id=user.id,
            email=user.email,
            role=user.role,
            first_name=user.first_name,
            last_name=user.last_name,
            company_name=user.company_name,
            email_verified=user.email_verified_at is not None,
        )


class SessionResponse(MessageResponse):
    token: str
    expires_at: datetime = Field(..., alias="expiresAt")
    user: PrincipalRead

    model_config = ConfigDict(populate_by_name=True)


class ResetTokenStatus(MessageResponse):
    email: str


class SessionInfo(BaseModel):
    """The caller's session as seen by the service."""

    user: PrincipalRead
    method: str
    expires_at: datetime = Field(..., alias="expiresAt")

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("method", mode="before")
    @classmethod
    def _enum_value(cls, value: object) -> object:
        return getattr(value, "value", value)
