from __future__ import annotations
import logging
from fastapi import HTTPException, Request, status
from ..config import get_settings
from ..redis_client import redis

S = get_settings()
logger = logging.getLogger(__name__)

WINDOW_SEC = 60

# ---- generic token counter (fixed window) ----
async def _hit(key: str, window_sec: int, limit: int) -> None:
    if not S.RATE_LIMIT_ENABLED or redis is None:
        return
    count = await redis.incr(key)
    if count == 1:
        await redis.expire(key, window_sec)
    if count > limit:
        ttl = await redis.ttl(key)
        logger.info("rate limit hit key=%s count=%d", key, count)
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="rate limit exceeded",
            headers={"Retry-After": str(max(ttl, 1)) if ttl and ttl > 0 else str(window_sec)},
        )

def _client_ip(req: Request) -> str:
    # prefer X-Forwarded-For (first hop), fallback to uvicorn client
    h = req.headers.get("x-forwarded-for")
    if h:
        return h.split(",")[0].strip()
    return req.client.host if req.client else "unknown"

# ---- public helpers (FastAPI dependencies) ----
async def limit_otp_generate(request: Request) -> None:
    ip = _client_ip(request)
    await _hit(f"rl:otp:gen:ip:{ip}", window_sec=WINDOW_SEC, limit=S.RL_OTP_GENERATE_PER_IP_60S)

async def limit_otp_verify(request: Request) -> None:
    ip = _client_ip(request)
    await _hit(f"rl:otp:verify:ip:{ip}", window_sec=WINDOW_SEC, limit=S.RL_OTP_VERIFY_PER_IP_60S)

async def limit_otp_resend(request: Request) -> None:
    ip = _client_ip(request)
    await _hit(f"rl:otp:resend:ip:{ip}", window_sec=WINDOW_SEC, limit=S.RL_OTP_RESEND_PER_IP_60S)
