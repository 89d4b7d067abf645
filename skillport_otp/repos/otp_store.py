from __future__ import annotations
import asyncio
import logging
import zlib
from datetime import datetime
from typing import Dict, Optional, Protocol

from redis import asyncio as aioredis
from redis.exceptions import WatchError

from ..domain.schemas.otp import OtpRecord

logger = logging.getLogger(__name__)


class OtpStore(Protocol):
    """Keyed by normalized email. compare_and_swap with new=None deletes."""

    async def get(self, email: str) -> Optional[OtpRecord]: ...

    async def set(self, email: str, record: OtpRecord) -> None: ...

    async def delete(self, email: str) -> None: ...

    async def compare_and_swap(
        self, email: str, expected: OtpRecord, new: Optional[OtpRecord]
    ) -> bool: ...


class InMemoryOtpStore:
    """Process-local store. Only valid for a single worker process."""

    _STRIPES = 64

    def __init__(self, grace_seconds: int = 3600) -> None:
        self._data: Dict[str, OtpRecord] = {}
        self._locks = [asyncio.Lock() for _ in range(self._STRIPES)]
        self._grace_seconds = grace_seconds

    def _lock(self, email: str) -> asyncio.Lock:
        return self._locks[zlib.crc32(email.encode("utf-8")) % self._STRIPES]

    async def get(self, email: str) -> Optional[OtpRecord]:
        return self._data.get(email)

    async def set(self, email: str, record: OtpRecord) -> None:
        async with self._lock(email):
            self._data[email] = record

    async def delete(self, email: str) -> None:
        async with self._lock(email):
            self._data.pop(email, None)

    async def compare_and_swap(
        self, email: str, expected: OtpRecord, new: Optional[OtpRecord]
    ) -> bool:
        async with self._lock(email):
            if self._data.get(email) != expected:
                return False
            if new is None:
                self._data.pop(email, None)
            else:
                self._data[email] = new
            return True

    async def purge_expired(self, now: datetime) -> int:
        """Drop records whose expiry (plus grace) is behind `now`. Returns count."""
        stale = [
            email for email, rec in list(self._data.items())
            if (now - rec.expires_at).total_seconds() > self._grace_seconds
        ]
        removed = 0
        for email in stale:
            rec = self._data.get(email)
            if rec is not None and await self.compare_and_swap(email, rec, None):
                removed += 1
        return removed

    def __len__(self) -> int:
        return len(self._data)


class RedisOtpStore:
    """Shared store; key TTL evicts records grace_seconds after their expiry."""

    def __init__(self, redis: aioredis.Redis, *, prefix: str = "otp:", grace_seconds: int = 3600) -> None:
        self._redis = redis
        self._prefix = prefix
        self._grace_seconds = grace_seconds

    def _key(self, email: str) -> str:
        return f"{self._prefix}{email}"

    def _ttl(self, record: OtpRecord) -> int:
        window = int((record.expires_at - record.issued_at).total_seconds())
        return max(window, 0) + self._grace_seconds

    @staticmethod
    def _decode(raw: Optional[str]) -> Optional[OtpRecord]:
        if raw is None:
            return None
        return OtpRecord.model_validate_json(raw)

    async def get(self, email: str) -> Optional[OtpRecord]:
        return self._decode(await self._redis.get(self._key(email)))

    async def set(self, email: str, record: OtpRecord) -> None:
        await self._redis.set(self._key(email), record.model_dump_json(), ex=self._ttl(record))

    async def delete(self, email: str) -> None:
        await self._redis.delete(self._key(email))

    async def compare_and_swap(
        self, email: str, expected: OtpRecord, new: Optional[OtpRecord]
    ) -> bool:
        key = self._key(email)
        async with self._redis.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(key)
                current = self._decode(await pipe.get(key))
                if current != expected:
                    await pipe.unwatch()
                    return False
                pipe.multi()
                if new is None:
                    pipe.delete(key)
                elif new.issued_at == expected.issued_at:
                    # same issuance (attempt bump): keep the existing eviction time
                    pipe.set(key, new.model_dump_json(), keepttl=True)
                else:
                    pipe.set(key, new.model_dump_json(), ex=self._ttl(new))
                await pipe.execute()
                return True
            except WatchError:
                logger.debug("otp_store: watch conflict on %s", key)
                return False
