import logging
import warnings

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Environment
    environment: str = "development"  # development | test | production
    log_level: str = "INFO"

    # Server
    ledger_host: str = "0.0.0.0"
    ledger_port: int = 8000

    # Database (sqlite for local dev, postgresql+asyncpg for production)
    database_url: str = "sqlite+aiosqlite:///./tipledger.db"

    # Auth (service-to-service JWT for the HTTP adapter)
    jwt_secret_key: str = "dev-secret-change-in-production"
    jwt_algorithm: str = "HS256"
    jwt_expire_hours: int = 24 * 7  # 7 days

    # House / treasury account that receives rakes and tip fees
    house_user_id: str = "house"

    # Fees (basis points). Per-token overrides win when set.
    tip_fee_bps: int = 100  # 1% tip tax paid by the sender
    house_fee_bps: int = 200  # 2% rake on a decisive match pot

    # Matches
    match_offer_seconds: int = 10 * 60

    # Group tips
    group_tip_min_seconds: int = 60
    group_tip_max_seconds: int = 60 * 60

    # Withdrawal policy defaults (human units). Per-token overrides win.
    min_withdraw: str = "50"
    withdraw_max_per_tx: str = "50"
    withdraw_daily_cap: str = "500"

    # CORS
    cors_origins: str = "http://localhost:5173,http://localhost:3000"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}


settings = Settings()

# Warn on insecure defaults (logged at startup, not a hard error for dev convenience)
_logger = logging.getLogger("tipledger.config")
_INSECURE_SECRETS = {
    "dev-secret-change-in-production",
    "change-me-to-a-random-string",
}


def validate_security_posture(cfg: Settings) -> None:
    is_prod = cfg.environment.lower() in {"production", "prod"}

    if cfg.jwt_secret_key in _INSECURE_SECRETS:
        if is_prod:
            raise RuntimeError(
                "FATAL: JWT_SECRET_KEY is set to an insecure default. "
                "Set a strong random secret via the JWT_SECRET_KEY environment variable before deploying to production."
            )
        warnings.warn(
            "JWT_SECRET_KEY is set to the default insecure value. "
            "Set a strong random secret via the JWT_SECRET_KEY environment variable for production.",
            stacklevel=1,
        )

    if cfg.cors_origins == "*":
        if is_prod:
            raise RuntimeError(
                "FATAL: CORS_ORIGINS cannot be '*' in production. "
                "Set explicit trusted origins via the CORS_ORIGINS environment variable."
            )
        _logger.warning(
            "CORS_ORIGINS is set to '*' (allow all). "
            "Configure specific origins for production via the CORS_ORIGINS environment variable."
        )

    if is_prod and cfg.database_url.startswith("sqlite"):
        raise RuntimeError(
            "FATAL: DATABASE_URL points at SQLite in production. "
            "Row-level locking requires PostgreSQL (postgresql+asyncpg://...)."
        )

    for name in ("tip_fee_bps", "house_fee_bps"):
        value = getattr(cfg, name)
        if not 0 <= value <= 10_000:
            raise RuntimeError(f"FATAL: {name.upper()} must be between 0 and 10000, got {value}")


validate_security_posture(settings)
