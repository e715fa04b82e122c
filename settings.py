"""
Runtime configuration.

Everything is read from the environment once, at startup, and handed to the
components that need it. Defaults are meant for local development.
"""
import os
from typing import List, Optional

from pydantic import BaseModel


class Settings(BaseModel):
    store_name: str = "flame&crumble"
    mongodb_uri: str = "mongodb://localhost:27017/flameandcrumble"
    database_name: str = "flameandcrumble"
    redis_url: str = "redis://localhost:6379/0"
    store_timeout_ms: int = 5000
    cache_timeout_seconds: float = 0.5

    jwt_secret: str = "devsecret_change_me"
    jwt_exp_min: int = 60 * 24
    cookie_secure: bool = False
    allowed_origins: List[str] = ["http://localhost:3000"]

    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_username: Optional[str] = None
    smtp_password: Optional[str] = None
    email_from: str = "no-reply@flameandcrumble.shop"
    verification_code_ttl_min: int = 15

    upload_dir: str = "public/images"
    max_upload_bytes: int = 5 * 1024 * 1024

    log_level: str = "INFO"
    # local development only: unsent verification codes are written to the log
    debug: bool = False

    # Cache TTLs, in seconds
    products_ttl: int = 3600
    cart_ttl: int = 1800
    wishlist_ttl: int = 3600
    order_ttl: int = 3600
    order_history_ttl: int = 600


def _flag(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def load_settings() -> Settings:
    origins = os.getenv("ALLOWED_ORIGINS", "http://localhost:3000").split(",")
    return Settings(
        store_name=os.getenv("STORE_NAME", "flame&crumble"),
        mongodb_uri=os.getenv("MONGODB_URI", "mongodb://localhost:27017/flameandcrumble"),
        database_name=os.getenv("DATABASE_NAME", "flameandcrumble"),
        redis_url=os.getenv("REDIS_URL", "redis://localhost:6379/0"),
        store_timeout_ms=int(os.getenv("STORE_TIMEOUT_MS", "5000")),
        cache_timeout_seconds=float(os.getenv("CACHE_TIMEOUT_SECONDS", "0.5")),
        jwt_secret=os.getenv("JWT_SECRET", "devsecret_change_me"),
        jwt_exp_min=int(os.getenv("JWT_EXP_MIN", str(60 * 24))),
        cookie_secure=_flag(os.getenv("COOKIE_SECURE", "false")),
        allowed_origins=[o.strip() for o in origins if o.strip()],
        smtp_host=os.getenv("SMTP_HOST") or None,
        smtp_port=int(os.getenv("SMTP_PORT", "587")),
        smtp_username=os.getenv("SMTP_USERNAME") or None,
        smtp_password=os.getenv("SMTP_PASSWORD") or None,
        email_from=os.getenv("EMAIL_FROM", "no-reply@flameandcrumble.shop"),
        verification_code_ttl_min=int(os.getenv("VERIFICATION_CODE_TTL_MIN", "15")),
        upload_dir=os.getenv("UPLOAD_DIR", "public/images"),
        max_upload_bytes=int(os.getenv("MAX_UPLOAD_BYTES", str(5 * 1024 * 1024))),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        debug=_flag(os.getenv("DEBUG", "false")),
    )
