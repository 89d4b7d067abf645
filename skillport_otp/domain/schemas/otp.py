from __future__ import annotations
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ..errors import OtpErrorCode


class OtpRecord(BaseModel):
    """One live code per email. Replaced wholesale on generate/resend."""
    model_config = ConfigDict(frozen=True)

    code: str = Field(pattern=r"^\d{6}$")
    issued_at: datetime
    expires_at: datetime
    attempts: int = Field(default=0, ge=0)
    first_name: str
    last_name: str = ""


class UserData(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    email: str
    first_name: str
    last_name: str = ""


class OtpOutcome(BaseModel):
    success: bool
    message: str
    error: Optional[OtpErrorCode] = None
    expires_in: Optional[int] = None
    user_data: Optional[UserData] = None
    attempts_left: Optional[int] = None


# ---- wire models (camelCase like the web client sends) ----

class _CamelIn(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True)


class _CamelRawIn(BaseModel):
    # no trimming; codes must match byte for byte
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class GenerateOtpIn(_CamelIn):
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None


class VerifyOtpIn(_CamelRawIn):
    email: Optional[str] = None
    otp: Optional[str] = None


class ResendOtpIn(_CamelIn):
    email: Optional[str] = None


class EmailPersonIn(_CamelIn):
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None


class PasswordResetEmailIn(EmailPersonIn):
    reset_link: Optional[str] = None


class OtpOut(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    success: bool
    message: str
    expires_in: Optional[int] = None
    user_data: Optional[UserData] = None
    attempts_left: Optional[int] = None

    @classmethod
    def from_outcome(cls, o: OtpOutcome) -> "OtpOut":
        return cls(
            success=o.success,
            message=o.message,
            expires_in=o.expires_in,
            user_data=o.user_data,
            attempts_left=o.attempts_left,
        )


class EmailOut(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    success: bool
    message: str
    message_id: Optional[str] = None
    error: Optional[str] = None
