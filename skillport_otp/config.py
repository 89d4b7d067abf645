from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Literal


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    ENV: Literal["dev", "prod", "test"] = "prod"
    DEBUG: bool = False

    # App
    APP_NAME: str = "skillport-otp"
    APP_HOST: str = "0.0.0.0"
    APP_PORT: int = 5002

    # Redis (optional; required for OTP_STORE_BACKEND=redis and rate limiting)
    REDIS_URL: str | None = None  # e.g., redis://localhost:6379/0

    # OTP
    OTP_STORE_BACKEND: Literal["memory", "redis"] = "memory"
    OTP_TTL_SECONDS: int = 10 * 60          # validity window of an issued code
    OTP_MAX_ATTEMPTS: int = 3
    OTP_STORE_GRACE_SECONDS: int = 60 * 60  # records outlive expiry so verify can report "expired"
    OTP_SWEEP_INTERVAL_SEC: int = 30        # in-memory store cleanup cadence
    OTP_CAS_RETRIES: int = 5
    OTP_KEY_PREFIX: str = "otp:"

    # SMTP (unset SMTP_USER/SMTP_PASSWORD -> emails are only logged)
    SMTP_HOST: str = "smtp.gmail.com"
    SMTP_PORT: int = 587
    SMTP_USER: str | None = None
    SMTP_PASSWORD: str | None = None
    SMTP_TIMEOUT_SEC: float = 15.0
    EMAIL_FROM: str = "no-reply@skillport.dev"
    EMAIL_FROM_NAME: str = "SkillPort"

    # Rate limits per IP per 60s
    RATE_LIMIT_ENABLED: bool = True
    RL_OTP_GENERATE_PER_IP_60S: int = 5
    RL_OTP_VERIFY_PER_IP_60S: int = 15
    RL_OTP_RESEND_PER_IP_60S: int = 3

    # Logging / Observability
    LOG_LEVEL: str = "INFO"
    METRICS_ENABLED: bool = True
    REQUEST_ID_HEADER: str = "X-Request-ID"

    CORS_ORIGINS: list[str] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

    @field_validator("OTP_STORE_BACKEND", mode="after")
    @classmethod
    def redis_backend_needs_url(cls, v, info):
        if v == "redis" and not info.data.get("REDIS_URL"):
            raise ValueError("OTP_STORE_BACKEND=redis requires REDIS_URL")
        return v

    @property
    def smtp_configured(self) -> bool:
        return bool(self.SMTP_USER and self.SMTP_PASSWORD)


def get_settings() -> Settings:
    # slightly faster singleton
    global _SETTINGS_SINGLETON
    try:
        return _SETTINGS_SINGLETON  # type: ignore[name-defined]
    except NameError:
        _SETTINGS_SINGLETON = Settings()  # type: ignore[assignment]
        return _SETTINGS_SINGLETON
