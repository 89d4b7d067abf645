from __future__ import annotations
from email.message import EmailMessage
from typing import List

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

from skillport_otp.config import get_settings
from skillport_otp.main import create_app
from skillport_otp.repos.otp_store import InMemoryOtpStore
from skillport_otp.services.email_service import EmailService
from skillport_otp.services.otp_service import OtpService


class RecordingTransport:
    """Captures outgoing messages; flip `fail` to simulate a bounced send."""

    def __init__(self) -> None:
        self.sent: List[EmailMessage] = []
        self.fail = False
        self.checks = 0

    async def deliver(self, message: EmailMessage) -> None:
        if self.fail:
            raise ConnectionError("smtp unavailable")
        self.sent.append(message)

    async def check(self) -> None:
        self.checks += 1
        if self.fail:
            raise ConnectionError("smtp unavailable")

    def last_text(self) -> str:
        return self.sent[-1].get_body(("plain",)).get_content()


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def email_service(transport) -> EmailService:
    return EmailService(transport=transport, settings=get_settings())


@pytest.fixture
def store() -> InMemoryOtpStore:
    return InMemoryOtpStore(grace_seconds=60)


@pytest.fixture
def otp_service(store, email_service) -> OtpService:
    return OtpService(store, email_service, ttl_seconds=600, max_attempts=3)


@pytest_asyncio.fixture
async def client(store, email_service):
    app = create_app(store=store, email_service=email_service, run_sweeper=False)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


# ---------- helpers ----------
async def issued_code(store: InMemoryOtpStore, email: str) -> str:
    rec = await store.get(email)
    assert rec is not None, f"no record for {email}"
    return rec.code


def wrong_code(code: str) -> str:
    return "100000" if code != "100000" else "100001"
