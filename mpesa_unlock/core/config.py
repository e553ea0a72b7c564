from dataclasses import dataclass
from functools import lru_cache
from typing import Any, List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from mpesa_unlock.core.logging import get_logger

_DEFAULT_CORS = ["http://localhost:3000", "http://localhost:5173"]

GATEWAY_BASE_URLS = {
    "sandbox": "https://sandbox.safaricom.co.ke",
    "production": "https://api.safaricom.co.ke",
}


def _parse_list(v: Any, default: List[str]) -> List[str]:
    try:
        if v is None or v == "":
            return default.copy()
        if isinstance(v, list):
            return [x for x in v if isinstance(x, str) and x.strip()]
        s = str(v).strip()
        if not s:
            return default.copy()
        if s.startswith("["):
            import json
            out = json.loads(s)
            return [x for x in out if isinstance(x, str) and x.strip()] or default.copy()
        return [x.strip() for x in s.split(",") if x.strip()] or default.copy()
    except Exception:
        return default.copy()


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # App
    env: str = Field(default="development", description="ENV")
    debug: bool = Field(default=False, description="DEBUG")
    secret_key: str = Field(default="change-me-in-production-min-32-chars")
    cookie_secret: str = Field(default="", alias="COOKIE_SECRET")

    # MongoDB
    mongodb_uri: str = Field(default="mongodb://localhost:27017", alias="MONGODB_URI")
    mongodb_db_name: str = Field(default="mpesa_unlock", alias="MONGODB_DB_NAME")

    # Redis
    redis_url: str = Field(default="redis://localhost:6379/0", alias="REDIS_URL")

    # M-Pesa (Daraja)
    mpesa_consumer_key: str = Field(default="", alias="MPESA_CONSUMER_KEY")
    mpesa_consumer_secret: str = Field(default="", alias="MPESA_CONSUMER_SECRET")
    mpesa_shortcode: str = Field(default="", alias="MPESA_SHORTCODE")
    mpesa_passkey: str = Field(default="", alias="MPESA_PASSKEY")
    mpesa_callback_url: str = Field(default="", alias="MPESA_CALLBACK_URL")
    mpesa_environment: str = Field(default="sandbox", alias="MPESA_ENVIRONMENT")
    mpesa_transaction_type: str = Field(default="CustomerPayBillOnline", alias="MPESA_TRANSACTION_TYPE")
    mpesa_account_reference: str = Field(default="LAB REPORT", alias="MPESA_ACCOUNT_REFERENCE")
    mpesa_transaction_desc: str = Field(default="Payment for draft access", alias="MPESA_TRANSACTION_DESC")
    mpesa_http_timeout_seconds: float = Field(default=15.0, alias="MPESA_HTTP_TIMEOUT_SECONDS")

    # Callback hardening (Daraja does not sign callbacks)
    mpesa_callback_token: str = Field(default="", alias="MPESA_CALLBACK_TOKEN")
    mpesa_callback_allowed_ips_raw: str = Field(
        default="",
        alias="MPESA_CALLBACK_ALLOWED_IPS",
        description="Comma-separated or JSON list; empty allows any source",
    )

    # Sentry
    sentry_dsn: str | None = Field(default=None, alias="SENTRY_DSN")

    # CORS: env as string, exposed as list
    cors_origins_raw: str = Field(
        default="http://localhost:3000,http://localhost:5173",
        alias="CORS_ORIGINS",
        description="Comma-separated or JSON list",
    )

    @property
    def cors_origins(self) -> List[str]:
        return _parse_list(getattr(self, "cors_origins_raw", None), _DEFAULT_CORS)

    @property
    def mpesa_callback_allowed_ips(self) -> List[str]:
        return _parse_list(getattr(self, "mpesa_callback_allowed_ips_raw", None), [])

    @property
    def paid_session_secret(self) -> str:
        return self.cookie_secret or self.secret_key

    # Unlock pricing (KES, whole units)
    unlock_amount: int = Field(default=50, alias="UNLOCK_AMOUNT")

    # Payment flow
    idempotency_window_seconds: int = 120
    # Initiation lock TTL = gateway worst case + this margin (DB insert, scheduling)
    initiation_lock_margin_seconds: int = 15
    rate_limit_attempts: int = 5
    rate_limit_window_seconds: int = 10 * 60
    rate_limit_backend: str = Field(default="memory", alias="RATE_LIMIT_BACKEND")
    csrf_max_age_seconds: int = 30 * 60
    paid_session_max_age_seconds: int = 30 * 60
    account_reference_prefix: str = "SciDraft"


@dataclass(frozen=True)
class GatewayConfig:
    """Resolved Daraja settings for one initiation."""

    consumer_key: str
    consumer_secret: str
    shortcode: str
    passkey: str
    callback_url: str
    environment: str
    transaction_type: str
    base_url: str
    timeout_seconds: float
    missing: tuple[str, ...]

    @property
    def is_callback_valid(self) -> bool:
        return self.callback_url.startswith("https://")


def gateway_config(settings: Settings | None = None) -> GatewayConfig:
    s = settings or get_settings()
    environment = (s.mpesa_environment or "sandbox").lower()
    if environment not in GATEWAY_BASE_URLS:
        get_logger(__name__).warning("mpesa_config_unknown_environment", environment=environment)
        environment = "sandbox"
    required = {
        "MPESA_CONSUMER_KEY": s.mpesa_consumer_key,
        "MPESA_CONSUMER_SECRET": s.mpesa_consumer_secret,
        "MPESA_SHORTCODE": s.mpesa_shortcode,
        "MPESA_PASSKEY": s.mpesa_passkey,
        "MPESA_CALLBACK_URL": s.mpesa_callback_url,
    }
    return GatewayConfig(
        consumer_key=s.mpesa_consumer_key,
        consumer_secret=s.mpesa_consumer_secret,
        shortcode=s.mpesa_shortcode,
        passkey=s.mpesa_passkey,
        callback_url=s.mpesa_callback_url,
        environment=environment,
        transaction_type=s.mpesa_transaction_type,
        base_url=GATEWAY_BASE_URLS[environment],
        timeout_seconds=s.mpesa_http_timeout_seconds,
        missing=tuple(name for name, value in required.items() if not value),
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()
