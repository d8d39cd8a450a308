"""Schemas for phone registration and OTP verification."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, constr

from app.models.enums import UserRole


class RegisterRequest(BaseModel):
    """Payload for registering (or re-registering) a phone number."""

    phone: constr(strip_whitespace=True, pattern=r"^\d{6,15}$") = Field(
        ..., description="Phone number without the country code"
    )
    country_code: constr(strip_whitespace=True, pattern=r"^\+?\d{1,4}$") = Field(
        ..., description="International dialing prefix such as +91"
    )
    name: constr(strip_whitespace=True, min_length=1, max_length=128) | None = None


class VerifyOtpRequest(BaseModel):
    phone: constr(strip_whitespace=True, pattern=r"^\d{6,15}$")
    otp: constr(strip_whitespace=True, pattern=r"^\d{4,8}$")


class ResendOtpRequest(BaseModel):
    phone: constr(strip_whitespace=True, pattern=r"^\d{6,15}$")


class PushTokenUpdate(BaseModel):
    token: constr(strip_whitespace=True, min_length=1, max_length=512)


class UserRead(BaseModel):
    """Representation of a user returned from the API."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    phone: str
    country_code: str
    name: str | None = None
    about: str | None = None
    profile_pic: str
    otp_verified: bool
    role: UserRole
    last_seen_at: datetime | None = None


class AuthResponse(BaseModel):
    """Token issued once the OTP has been verified."""

    access_token: str
    token_type: str = "bearer"
    user: UserRead
    otp: str | None = Field(
        default=None, description="Plain OTP, only present when OTP echo is enabled"
    )


class RegisterResponse(BaseModel):
    """Registration acknowledgement; a token is only issued by OTP verification."""

    user_id: int
    phone: str
    otp_verified: bool
    otp: str | None = Field(
        default=None, description="Plain OTP, only present when OTP echo is enabled"
    )


class ProfileUpdate(BaseModel):
    name: constr(strip_whitespace=True, min_length=1, max_length=128) | None = None
    about: constr(strip_whitespace=True, max_length=255) | None = None
    profile_pic: constr(strip_whitespace=True, min_length=1, max_length=512) | None = None
