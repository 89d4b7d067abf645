from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from ...domain.schemas.otp import EmailOut, EmailPersonIn, PasswordResetEmailIn
from ...services.email_service import EmailResult, EmailService
from ..deps import get_email_service

router = APIRouter(prefix="/api/email", tags=["email"])


def _bad_request(message: str) -> JSONResponse:
    return JSONResponse(status_code=400, content={"success": False, "message": message})


def _respond(result: EmailResult, ok: str, failed: str) -> JSONResponse:
    if result.success:
        out = EmailOut(success=True, message=ok, message_id=result.message_id)
        return JSONResponse(status_code=200, content=out.model_dump(by_alias=True, exclude_none=True))
    out = EmailOut(success=False, message=failed, error=result.error)
    return JSONResponse(status_code=500, content=out.model_dump(by_alias=True, exclude_none=True))


@router.post("/registration-welcome", response_model=EmailOut)
async def registration_welcome(payload: EmailPersonIn, svc: EmailService = Depends(get_email_service)):
    if not payload.email or not payload.first_name:
        return _bad_request("Email and first name are required")
    result = await svc.send(
        payload.email,
        "registration_welcome",
        {"first_name": payload.first_name, "last_name": payload.last_name},
    )
    return _respond(result, "Registration welcome email sent successfully", "Failed to send registration welcome email")


@router.post("/first-login", response_model=EmailOut)
async def first_login(payload: EmailPersonIn, svc: EmailService = Depends(get_email_service)):
    if not payload.email or not payload.first_name:
        return _bad_request("Email and first name are required")
    result = await svc.send(
        payload.email,
        "first_login",
        {"first_name": payload.first_name, "last_name": payload.last_name},
    )
    return _respond(result, "First login email sent successfully", "Failed to send first login email")


@router.post("/password-reset", response_model=EmailOut)
async def password_reset(payload: PasswordResetEmailIn, svc: EmailService = Depends(get_email_service)):
    if not payload.email or not payload.first_name or not payload.reset_link:
        return _bad_request("Email, first name, and reset link are required")
    result = await svc.send(
        payload.email,
        "password_reset",
        {"first_name": payload.first_name, "last_name": payload.last_name, "reset_link": payload.reset_link},
    )
    return _respond(result, "Password reset email sent successfully", "Failed to send password reset email")


@router.get("/test-connection", response_model=EmailOut)
async def test_connection(svc: EmailService = Depends(get_email_service)):
    result = await svc.test_connection()
    return _respond(result, "Email service connection successful", "Email service connection failed")
