import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from skillport_otp.domain.errors import OtpErrorCode
from skillport_otp.services import otp_service as otp_module
from skillport_otp.repos.otp_store import InMemoryOtpStore
from skillport_otp.services.otp_service import OtpService
from tests.conftest import issued_code, wrong_code

pytestmark = pytest.mark.asyncio

EMAIL = "a@x.com"


async def test_generate_stores_record_and_emails_code(otp_service, store, transport):
    out = await otp_service.generate(EMAIL, "A", "B")

    assert out.success and out.expires_in == 600
    assert out.message == "OTP sent successfully"
    rec = await store.get(EMAIL)
    assert rec.attempts == 0 and rec.first_name == "A" and rec.last_name == "B"
    assert (rec.expires_at - rec.issued_at) == timedelta(minutes=10)
    assert len(transport.sent) == 1
    assert transport.sent[0]["To"] == EMAIL
    assert rec.code in transport.last_text()


@pytest.mark.parametrize("email,first", [("", "A"), (EMAIL, ""), (None, "A"), ("   ", "A"), (EMAIL, None)])
async def test_generate_requires_email_and_first_name(otp_service, store, transport, email, first):
    out = await otp_service.generate(email, first, "B")

    assert not out.success
    assert out.error == OtpErrorCode.INVALID_REQUEST
    assert len(store) == 0 and transport.sent == []


async def test_generate_replaces_prior_record(otp_service, store):
    await otp_service.generate(EMAIL, "A", "B")
    first = await issued_code(store, EMAIL)
    await otp_service.verify(EMAIL, wrong_code(first))

    await otp_service.generate(EMAIL, "Ann", "C")

    rec = await store.get(EMAIL)
    assert rec.attempts == 0
    assert rec.first_name == "Ann"
    assert len(store) == 1


async def test_verify_succeeds_exactly_once(otp_service, store):
    await otp_service.generate(EMAIL, "A", "B")
    code = await issued_code(store, EMAIL)

    ok = await otp_service.verify(EMAIL, code)
    assert ok.success
    assert ok.user_data.model_dump(by_alias=True) == {"email": EMAIL, "firstName": "A", "lastName": "B"}

    again = await otp_service.verify(EMAIL, code)
    assert not again.success
    assert again.error == OtpErrorCode.NOT_FOUND
    assert again.message == "No OTP found for this email"


async def test_verify_unknown_email_is_not_found(otp_service):
    out = await otp_service.verify("nobody@x.com", "123456")
    assert out.error == OtpErrorCode.NOT_FOUND


@pytest.mark.parametrize("email,code", [("", "123456"), (EMAIL, ""), (None, None)])
async def test_verify_requires_both_fields(otp_service, email, code):
    out = await otp_service.verify(email, code)
    assert out.error == OtpErrorCode.INVALID_REQUEST


async def test_wrong_codes_count_down_then_exhaust(otp_service, store):
    await otp_service.generate(EMAIL, "A", "B")
    code = await issued_code(store, EMAIL)
    bad = wrong_code(code)

    lefts = []
    for _ in range(3):
        out = await otp_service.verify(EMAIL, bad)
        assert out.error == OtpErrorCode.INVALID_CODE
        assert out.message == "Invalid OTP"
        lefts.append(out.attempts_left)
    assert lefts == [2, 1, 0]
    assert (await store.get(EMAIL)).attempts == 3

    # the correct code no longer helps
    fourth = await otp_service.verify(EMAIL, code)
    assert fourth.error == OtpErrorCode.ATTEMPTS_EXHAUSTED
    assert fourth.message.startswith("Too many failed attempts")
    assert await store.get(EMAIL) is None

    fifth = await otp_service.verify(EMAIL, code)
    assert fifth.error == OtpErrorCode.NOT_FOUND


async def test_verify_after_expiry_deletes_record(otp_service, store, monkeypatch):
    await otp_service.generate(EMAIL, "A", "B")
    code = await issued_code(store, EMAIL)

    later = datetime.now(timezone.utc) + timedelta(minutes=10, seconds=1)
    monkeypatch.setattr(otp_module, "_now_utc", lambda: later)

    out = await otp_service.verify(EMAIL, code)
    assert out.error == OtpErrorCode.EXPIRED
    assert out.message == "OTP has expired"
    assert await store.get(EMAIL) is None


async def test_expiry_wins_over_exhausted_attempts(otp_service, store, monkeypatch):
    await otp_service.generate(EMAIL, "A", "B")
    bad = wrong_code(await issued_code(store, EMAIL))
    for _ in range(3):
        await otp_service.verify(EMAIL, bad)

    later = datetime.now(timezone.utc) + timedelta(hours=1)
    monkeypatch.setattr(otp_module, "_now_utc", lambda: later)

    out = await otp_service.verify(EMAIL, bad)
    assert out.error == OtpErrorCode.EXPIRED


async def test_email_is_normalized(otp_service, store):
    await otp_service.generate("  A@X.com ", "A", "B")
    code = await issued_code(store, EMAIL)

    out = await otp_service.verify("a@x.COM", code)
    # keyed case-insensitively, echoed back as submitted
    assert out.success and out.user_data.email == "a@x.COM"


async def test_resend_without_record_is_not_found(otp_service, transport):
    out = await otp_service.resend(EMAIL)
    assert out.error == OtpErrorCode.NOT_FOUND
    assert out.message == "No pending OTP for this email"
    assert transport.sent == []


async def test_resend_requires_email(otp_service):
    out = await otp_service.resend("")
    assert out.error == OtpErrorCode.INVALID_REQUEST


async def test_resend_resets_attempts_and_expiry(otp_service, store, transport, monkeypatch):
    t0 = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
    monkeypatch.setattr(otp_module, "_now_utc", lambda: t0)
    await otp_service.generate(EMAIL, "A", "B")
    bad = wrong_code(await issued_code(store, EMAIL))
    await otp_service.verify(EMAIL, bad)
    await otp_service.verify(EMAIL, bad)

    t1 = t0 + timedelta(minutes=5)
    monkeypatch.setattr(otp_module, "_now_utc", lambda: t1)
    out = await otp_service.resend(EMAIL)

    assert out.success and out.expires_in == 600
    assert out.message == "New OTP sent successfully"
    rec = await store.get(EMAIL)
    assert rec.attempts == 0
    assert rec.issued_at == t1
    assert rec.expires_at == t1 + timedelta(minutes=10)
    assert (rec.first_name, rec.last_name) == ("A", "B")
    assert len(transport.sent) == 2
    assert rec.code in transport.last_text()

    ok = await otp_service.verify(EMAIL, rec.code)
    assert ok.success


async def test_delivery_failure_keeps_code_valid(otp_service, store, transport):
    transport.fail = True

    out = await otp_service.generate(EMAIL, "A", "B")
    assert not out.success
    assert out.error == OtpErrorCode.EMAIL_DELIVERY_FAILED
    assert out.message == "Failed to send OTP email"

    code = await issued_code(store, EMAIL)
    ok = await otp_service.verify(EMAIL, code)
    assert ok.success


async def test_resend_delivery_failure_keeps_new_code(otp_service, store, transport):
    await otp_service.generate(EMAIL, "A", "B")
    transport.fail = True

    out = await otp_service.resend(EMAIL)
    assert out.error == OtpErrorCode.EMAIL_DELIVERY_FAILED
    assert (await store.get(EMAIL)).attempts == 0


async def test_collaborator_exception_is_internal_error(store):
    class Exploding:
        async def send(self, *a, **kw):
            raise RuntimeError("boom")

    svc = OtpService(store, Exploding())
    out = await svc.generate(EMAIL, "A", "B")
    assert out.error == OtpErrorCode.INTERNAL_ERROR
    assert out.message == "Internal server error"


async def test_store_fault_is_internal_error(email_service):
    class BrokenStore:
        async def get(self, email):
            raise ConnectionError("store down")

        async def set(self, email, record):
            raise ConnectionError("store down")

        async def delete(self, email):
            raise ConnectionError("store down")

        async def compare_and_swap(self, email, expected, new):
            raise ConnectionError("store down")

    svc = OtpService(BrokenStore(), email_service)
    assert (await svc.generate(EMAIL, "A", "B")).error == OtpErrorCode.INTERNAL_ERROR
    assert (await svc.verify(EMAIL, "123456")).error == OtpErrorCode.INTERNAL_ERROR
    assert (await svc.resend(EMAIL)).error == OtpErrorCode.INTERNAL_ERROR


async def test_persistent_cas_conflicts_give_up(store, email_service):
    class AlwaysLosing(type(store)):
        async def compare_and_swap(self, email, expected, new):
            return False

    losing = AlwaysLosing()
    svc = OtpService(losing, email_service, cas_retries=3)
    await svc.generate(EMAIL, "A", "B")

    assert (await svc.verify(EMAIL, "123456")).error == OtpErrorCode.INTERNAL_ERROR
    assert (await svc.resend(EMAIL)).error == OtpErrorCode.INTERNAL_ERROR
    assert (await losing.get(EMAIL)).attempts == 0


async def test_concurrent_verifies_single_success(otp_service, store):
    await otp_service.generate(EMAIL, "A", "B")
    code = await issued_code(store, EMAIL)

    results = await asyncio.gather(*[otp_service.verify(EMAIL, code) for _ in range(10)])

    assert sum(r.success for r in results) == 1
    assert {r.error for r in results if not r.success} == {OtpErrorCode.NOT_FOUND}


async def test_concurrent_wrong_codes_never_exceed_max(otp_service, store):
    await otp_service.generate(EMAIL, "A", "B")
    bad = wrong_code(await issued_code(store, EMAIL))

    results = await asyncio.gather(*[otp_service.verify(EMAIL, bad) for _ in range(6)])

    invalid = [r for r in results if r.error == OtpErrorCode.INVALID_CODE]
    assert sorted(r.attempts_left for r in invalid) == [0, 1, 2]
    rec = await store.get(EMAIL)
    assert rec is None or rec.attempts <= 3




@pytest.mark.parametrize("padded", [" {}", "{} ", "  {}\n", "\t{}"])
async def test_padded_code_is_a_wrong_code(otp_service, store, padded):
    await otp_service.generate(EMAIL, "A", "B")
    code = await issued_code(store, EMAIL)

    out = await otp_service.verify(EMAIL, padded.format(code))

    assert out.error == OtpErrorCode.INVALID_CODE
    assert out.attempts_left == 2
    assert (await store.get(EMAIL)).attempts == 1


async def test_late_verify_after_sweep_still_reports_expired(email_service, monkeypatch):
    store = InMemoryOtpStore()
    svc = OtpService(store, email_service)
    await svc.generate(EMAIL, "A", "B")
    rec = await store.get(EMAIL)

    later = rec.expires_at + timedelta(minutes=30)
    assert await store.purge_expired(later) == 0

    monkeypatch.setattr(otp_module, "_now_utc", lambda: later)
    out = await svc.verify(EMAIL, rec.code)
    assert out.error == OtpErrorCode.EXPIRED
