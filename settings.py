import logging
import os
import sys
from pathlib import Path
from typing import List

from pydantic import BaseModel

logger = logging.getLogger(__name__)

DEV_ADMIN_EMAIL = "admin@example.com"
DEV_ADMIN_PASSWORD = "admin@123"  # dev-only fallback
DEV_JWT_SECRET = "dev-secret-change-me"


class Settings(BaseModel):
    port: int = 5506
    app_env: str = "development"
    admin_access_enabled: bool = False
    data_dir: Path = Path("data")
    storage_backend: str = "json"

    default_admin_email: str = DEV_ADMIN_EMAIL
    default_admin_password: str = DEV_ADMIN_PASSWORD
    bcrypt_rounds: int = 12

    jwt_secret: str = DEV_JWT_SECRET
    jwt_expires_min: int = 60

    session_ttl_seconds: float = 8 * 60 * 60
    session_max: int = 10_000

    rate_limit_window_seconds: float = 5 * 60
    rate_limit_max: int = 50
    rate_limit_max_keys: int = 10_000

    shipping_cost: float = 60
    store_name: str = "11 Code"
    order_prefix: str = "11C"
    upi_verify_delay_seconds: float = 1.2

    log_level: str = "INFO"
    cors_origins: List[str] = []

    @property
    def is_production(self) -> bool:
        return self.app_env.strip().lower() == "production"

    @property
    def admin_enabled(self) -> bool:
        """Admin surface is on when explicitly enabled, or anywhere but production."""
        return self.admin_access_enabled or not self.is_production

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            port=int(os.getenv("PORT", "5506")),
            app_env=os.getenv("APP_ENV", "development"),
            admin_access_enabled=os.getenv("ADMIN_ACCESS_ENABLED", "").strip().lower() == "true",
            data_dir=Path(os.getenv("DATA_DIR", "data")),
            storage_backend=os.getenv("STORAGE_BACKEND", "json").strip().lower(),
            default_admin_email=os.getenv("DEFAULT_ADMIN_EMAIL", DEV_ADMIN_EMAIL),
            default_admin_password=os.getenv("DEFAULT_ADMIN_PASSWORD", DEV_ADMIN_PASSWORD),
            bcrypt_rounds=int(os.getenv("BCRYPT_ROUNDS", "12")),
            jwt_secret=os.getenv("JWT_SECRET", DEV_JWT_SECRET),
            jwt_expires_min=int(os.getenv("JWT_EXPIRES_MIN", "60")),
            session_ttl_seconds=float(os.getenv("SESSION_TTL_SECONDS", str(8 * 60 * 60))),
            session_max=int(os.getenv("SESSION_MAX", "10000")),
            rate_limit_window_seconds=float(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "300")),
            rate_limit_max=int(os.getenv("RATE_LIMIT_MAX", "50")),
            rate_limit_max_keys=int(os.getenv("RATE_LIMIT_MAX_KEYS", "10000")),
            shipping_cost=float(os.getenv("SHIPPING_COST", "60")),
            store_name=os.getenv("STORE_NAME", "11 Code"),
            order_prefix=os.getenv("ORDER_PREFIX", "11C"),
            upi_verify_delay_seconds=float(os.getenv("UPI_VERIFY_DELAY_SECONDS", "1.2")),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            cors_origins=[o.strip() for o in os.getenv("CORS_ORIGINS", "").split(",") if o.strip()],
        )

    def warn_if_insecure(self) -> None:
        if self.is_production and not self.admin_enabled:
            logger.warning("Admin access disabled in production (ADMIN_ACCESS_ENABLED != true)")
        if self.default_admin_password == DEV_ADMIN_PASSWORD:
            logger.warning("Using dev fallback admin password. Set DEFAULT_ADMIN_PASSWORD for production.")
        if self.jwt_secret == DEV_JWT_SECRET:
            logger.warning("Using dev fallback JWT secret. Set JWT_SECRET for production.")


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
