from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from ...domain.errors import HTTP_STATUS
from ...domain.schemas.otp import GenerateOtpIn, OtpOut, OtpOutcome, ResendOtpIn, VerifyOtpIn
from ...services.otp_service import OtpService
from ...services.rate_limit import limit_otp_generate, limit_otp_resend, limit_otp_verify
from ..deps import get_otp_service

router = APIRouter(prefix="/api/otp", tags=["otp"])


def _respond(outcome: OtpOutcome) -> JSONResponse:
    status_code = 200 if outcome.success else HTTP_STATUS[outcome.error]
    body = OtpOut.from_outcome(outcome).model_dump(by_alias=True, exclude_none=True)
    return JSONResponse(status_code=status_code, content=body)


@router.post("/generate", response_model=OtpOut, dependencies=[Depends(limit_otp_generate)])
async def generate_otp(payload: GenerateOtpIn, svc: OtpService = Depends(get_otp_service)):
    return _respond(await svc.generate(payload.email, payload.first_name, payload.last_name))


@router.post("/verify", response_model=OtpOut, dependencies=[Depends(limit_otp_verify)])
async def verify_otp(payload: VerifyOtpIn, svc: OtpService = Depends(get_otp_service)):
    return _respond(await svc.verify(payload.email, payload.otp))


@router.post("/resend", response_model=OtpOut, dependencies=[Depends(limit_otp_resend)])
async def resend_otp(payload: ResendOtpIn, svc: OtpService = Depends(get_otp_service)):
    return _respond(await svc.resend(payload.email))
