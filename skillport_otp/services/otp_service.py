from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

from ..domain.errors import OtpErrorCode, StoreConflict
from ..domain.schemas.otp import OtpOutcome, OtpRecord, UserData
from ..observability.logging import mask_email
from ..observability.metrics import OTP_CAS_CONFLICTS, OTP_ISSUED, OTP_VERIFY
from ..repos.otp_store import OtpStore
from .email_service import EmailService

logger = logging.getLogger(__name__)

CODE_MIN = 100_000
CODE_MAX = 999_999

MSG_REQUIRED_GENERATE = "Email and first name are required"
MSG_REQUIRED_VERIFY = "Email and OTP are required"
MSG_REQUIRED_RESEND = "Email is required"
MSG_SENT = "OTP sent successfully"
MSG_RESENT = "New OTP sent successfully"
MSG_SEND_FAILED = "Failed to send OTP email"
MSG_NOT_FOUND = "No OTP found for this email"
MSG_NO_PENDING = "No pending OTP for this email"
MSG_EXPIRED = "OTP has expired"
MSG_EXHAUSTED = "Too many failed attempts. Please request a new OTP."
MSG_INVALID = "Invalid OTP"
MSG_VERIFIED = "OTP verified successfully"
MSG_INTERNAL = "Internal server error"


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def generate_code() -> str:
    # uniform over [100000, 999999]; never a leading zero
    return str(CODE_MIN + secrets.randbelow(CODE_MAX - CODE_MIN + 1))


def normalize_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


def _fail(code: OtpErrorCode, message: str, **extra) -> OtpOutcome:
    return OtpOutcome(success=False, message=message, error=code, **extra)


class OtpService:
    """
    Issues, verifies and re-issues one-time email codes.

    Every public method returns an OtpOutcome; store and collaborator faults
    are converted to InternalError instead of propagating. Updates to an
    existing record go through compare_and_swap so concurrent verify/resend
    calls for the same email cannot lose each other's writes. The email is
    sent after the store write, and a failed send does not undo it.
    """

    def __init__(
        self,
        store: OtpStore,
        email_service: EmailService,
        *,
        ttl_seconds: int = 600,
        max_attempts: int = 3,
        cas_retries: int = 5,
    ) -> None:
        self._store = store
        self._email = email_service
        self.ttl_seconds = ttl_seconds
        self.max_attempts = max_attempts
        self._cas_retries = cas_retries

    @property
    def store(self) -> OtpStore:
        return self._store

    def _new_record(self, first_name: str, last_name: str) -> OtpRecord:
        now = _now_utc()
        return OtpRecord(
            code=generate_code(),
            issued_at=now,
            expires_at=now + timedelta(seconds=self.ttl_seconds),
            attempts=0,
            first_name=first_name,
            last_name=last_name,
        )

    async def _deliver(self, email: str, record: OtpRecord, ok_message: str) -> OtpOutcome:
        try:
            result = await self._email.send(
                email,
                "otp",
                {
                    "otp": record.code,
                    "first_name": record.first_name,
                    "last_name": record.last_name,
                    "ttl_minutes": self.ttl_seconds // 60,
                },
            )
        except Exception:
            logger.exception("otp email collaborator raised for %s", mask_email(email))
            return _fail(OtpErrorCode.INTERNAL_ERROR, MSG_INTERNAL)

        if not result.success:
            # the stored code stays valid
            logger.warning("otp email not delivered to %s: %s", mask_email(email), result.error)
            return _fail(OtpErrorCode.EMAIL_DELIVERY_FAILED, MSG_SEND_FAILED)
        return OtpOutcome(success=True, message=ok_message, expires_in=self.ttl_seconds)

    # ---- operations ----

    async def generate(self, email: Optional[str], first_name: Optional[str], last_name: Optional[str] = None) -> OtpOutcome:
        email = normalize_email(email)
        first_name = (first_name or "").strip()
        if not email or not first_name:
            return _fail(OtpErrorCode.INVALID_REQUEST, MSG_REQUIRED_GENERATE)

        record = self._new_record(first_name, (last_name or "").strip())
        try:
            await self._store.set(email, record)
        except Exception:
            logger.exception("otp store write failed for %s", mask_email(email))
            return _fail(OtpErrorCode.INTERNAL_ERROR, MSG_INTERNAL)

        OTP_ISSUED.labels(kind="generate").inc()
        logger.info("otp issued for %s", mask_email(email))
        return await self._deliver(email, record, MSG_SENT)

    async def verify(self, email: Optional[str], code: Optional[str]) -> OtpOutcome:
        submitted_email = (email or "").strip()
        email = normalize_email(email)
        # exact match: the submitted code is compared as-is
        code = code or ""
        if not email or not code:
            return _fail(OtpErrorCode.INVALID_REQUEST, MSG_REQUIRED_VERIFY)

        try:
            outcome = await self._verify(email, code, submitted_email)
        except StoreConflict:
            logger.error("otp verify gave up after %d conflicting updates for %s", self._cas_retries, mask_email(email))
            outcome = _fail(OtpErrorCode.INTERNAL_ERROR, MSG_INTERNAL)
        except Exception:
            logger.exception("otp verify failed for %s", mask_email(email))
            outcome = _fail(OtpErrorCode.INTERNAL_ERROR, MSG_INTERNAL)

        OTP_VERIFY.labels(outcome="success" if outcome.success else outcome.error.value).inc()
        return outcome

    async def _verify(self, email: str, code: str, submitted_email: str) -> OtpOutcome:
        for _ in range(self._cas_retries):
            record = await self._store.get(email)
            if record is None:
                return _fail(OtpErrorCode.NOT_FOUND, MSG_NOT_FOUND)

            if _now_utc() > record.expires_at:
                if await self._store.compare_and_swap(email, record, None):
                    return _fail(OtpErrorCode.EXPIRED, MSG_EXPIRED)
            elif record.attempts >= self.max_attempts:
                if await self._store.compare_and_swap(email, record, None):
                    return _fail(OtpErrorCode.ATTEMPTS_EXHAUSTED, MSG_EXHAUSTED)
            elif secrets.compare_digest(record.code.encode(), code.encode()):
                if await self._store.compare_and_swap(email, record, None):
                    logger.info("otp verified for %s", mask_email(email))
                    return OtpOutcome(
                        success=True,
                        message=MSG_VERIFIED,
                        user_data=UserData(email=submitted_email, first_name=record.first_name, last_name=record.last_name),
                    )
            else:
                bumped = record.model_copy(update={"attempts": record.attempts + 1})
                if await self._store.compare_and_swap(email, record, bumped):
                    return _fail(
                        OtpErrorCode.INVALID_CODE,
                        MSG_INVALID,
                        attempts_left=self.max_attempts - bumped.attempts,
                    )
            OTP_CAS_CONFLICTS.inc()
        raise StoreConflict(email)

    async def resend(self, email: Optional[str]) -> OtpOutcome:
        email = normalize_email(email)
        if not email:
            return _fail(OtpErrorCode.INVALID_REQUEST, MSG_REQUIRED_RESEND)

        try:
            fresh = await self._reissue(email)
        except StoreConflict:
            logger.error("otp resend gave up after %d conflicting updates for %s", self._cas_retries, mask_email(email))
            return _fail(OtpErrorCode.INTERNAL_ERROR, MSG_INTERNAL)
        except Exception:
            logger.exception("otp resend failed for %s", mask_email(email))
            return _fail(OtpErrorCode.INTERNAL_ERROR, MSG_INTERNAL)

        if fresh is None:
            return _fail(OtpErrorCode.NOT_FOUND, MSG_NO_PENDING)

        OTP_ISSUED.labels(kind="resend").inc()
        logger.info("otp re-issued for %s", mask_email(email))
        return await self._deliver(email, fresh, MSG_RESENT)

    async def _reissue(self, email: str) -> Optional[OtpRecord]:
        for _ in range(self._cas_retries):
            record = await self._store.get(email)
            if record is None:
                return None
            fresh = self._new_record(record.first_name, record.last_name)
            if await self._store.compare_and_swap(email, record, fresh):
                return fresh
            OTP_CAS_CONFLICTS.inc()
        raise StoreConflict(email)
