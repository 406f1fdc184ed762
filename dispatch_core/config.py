from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Literal

from dispatch_core.infra.logging_config import get_logger

logger = get_logger(__name__)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application
    app_env: Literal["dev", "staging", "prod"] = "dev"
    log_level: str = "INFO"
    log_json: bool | None = None  # None = JSON in prod, console elsewhere
    enable_request_logging: bool = True

    # Record store
    # "memory"   - in-process store (dev / tests)
    # "postgres" - asyncpg-backed store of record
    store_backend: Literal["memory", "postgres"] = "memory"
    database_url: str | None = None
    pg_pool_min: int = 2
    pg_pool_max: int = 20
    pg_command_timeout: int = 30

    # Security
    allowed_origins: list[str] = ["*"]
    # SECURITY: Only set to true if behind a trusted reverse proxy
    trust_proxy_headers: bool = False

    # Rate limiting (per process, see InMemoryRateLimiter)
    rate_limit_window_seconds: int = 60
    rate_limit_per_token: int = 100  # authenticated callers, keyed on token
    rate_limit_per_address: int = 200  # unauthenticated callers, keyed on IP
    rate_limit_sweep_interval_seconds: int = 300
    rate_limit_grace_seconds: int = 60

    # Sessions
    session_ttl_seconds: int = 86400  # 24 hours
    session_token_min_length: int = 16

    # Matching
    default_service_radius_miles: float = 50.0

    # Payouts
    payout_split_mode: Literal["equal", "percent", "flat"] = "equal"
    payout_mismatch_tolerance: float = 0.01

    @property
    def is_production(self) -> bool:
        return self.app_env == "prod"

    @property
    def is_staging(self) -> bool:
        return self.app_env == "staging"

    @property
    def use_json_logs(self) -> bool:
        if self.log_json is None:
            return self.is_production
        return self.log_json

    def validate_required_for_production(self) -> list[str]:
        """Validate that required settings exist for production"""
        if not self.is_production:
            return []

        missing = []
        if self.store_backend != "postgres":
            missing.append("store_backend=postgres")
        if not self.database_url:
            missing.append("database_url")
        return missing


def warn_on_risky_config(s: "Settings") -> list[str]:
    warnings: list[str] = []

    if s.is_production and s.allowed_origins == ["*"]:
        warnings.append("prod: allowed_origins=['*'] (CORS is wide open).")

    if s.trust_proxy_headers:
        warnings.append(
            "trust_proxy_headers=True: ensure you are behind a trusted reverse proxy, "
            "otherwise X-Forwarded-For spoofing is possible."
        )

    if s.store_backend == "memory" and not s.is_production:
        warnings.append("store_backend=memory: records are lost on restart.")

    if s.session_token_min_length < 16:
        warnings.append(
            f"session_token_min_length={s.session_token_min_length} accepts very short tokens."
        )

    if s.rate_limit_per_token > s.rate_limit_per_address:
        warnings.append(
            "rate_limit_per_token exceeds rate_limit_per_address "
            "(authenticated callers get a looser ceiling than anonymous ones)."
        )

    if s.default_service_radius_miles <= 0:
        warnings.append("default_service_radius_miles <= 0: technicians without a radius match nothing.")

    return warnings


def validate_or_warn(s: "Settings") -> None:
    """
    In prod: enforce required settings (hard fail).
    In non-prod: warn only.
    """
    missing = s.validate_required_for_production()

    if missing:
        raise RuntimeError(f"Missing required settings for production: {', '.join(missing)}")

    for msg in warn_on_risky_config(s):
        logger.warning("[config] %s", msg)


settings = Settings()
validate_or_warn(settings)
