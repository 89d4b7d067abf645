from datetime import datetime, timezone

from fastapi import APIRouter
from ...redis_client import redis_health
from ...config import get_settings

router = APIRouter(prefix="/health", tags=["health"])
S = get_settings()

@router.get("")
async def health():
    redis_ok = await redis_health()
    # redis only matters when it backs the OTP store
    healthy = redis_ok is not False or S.OTP_STORE_BACKEND != "redis"
    return {
        "success": healthy,
        "message": "OTP Server is running" if healthy else "OTP Server is degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "store": S.OTP_STORE_BACKEND,
        "dependencies": {"redis": redis_ok},
    }

@router.get("/liveness")
async def liveness():
    return {"alive": True}
