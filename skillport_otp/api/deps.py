from __future__ import annotations
from fastapi import Request

from ..services.email_service import EmailService
from ..services.otp_service import OtpService


def get_otp_service(request: Request) -> OtpService:
    return request.app.state.otp_service


def get_email_service(request: Request) -> EmailService:
    return request.app.state.email_service
