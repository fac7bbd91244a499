import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str

    storage_backend: str
    s3_endpoint: str
    s3_region: str
    s3_bucket: str
    s3_expense_bucket: str
    s3_access_key_id: str
    s3_secret_access_key: str
    s3_public_url: str

    bank_account_key: str

    jobs_inline: bool
    autosave_debounce_seconds: float
    media_per_page: int
    users_per_page: int


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _getenv_float(name: str, default: float) -> float:
    raw = _getenv(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _getenv_int(name: str, default: int) -> int:
    raw = _getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def load_settings() -> Settings:
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=_getenv("DATABASE_URL", "sqlite:///clubadmin.db"),
        storage_backend=_getenv("STORAGE_BACKEND", "local"),
        s3_endpoint=_getenv("S3_ENDPOINT", ""),
        s3_region=_getenv("S3_REGION", "us-west-1"),
        s3_bucket=_getenv("S3_BUCKET", ""),
        s3_expense_bucket=_getenv("S3_EXPENSE_BUCKET", ""),
        s3_access_key_id=_getenv("S3_ACCESS_KEY_ID", ""),
        s3_secret_access_key=_getenv("S3_SECRET_ACCESS_KEY", ""),
        s3_public_url=_getenv("S3_PUBLIC_URL", ""),
        bank_account_key=_getenv("BANK_ACCOUNT_KEY", ""),
        jobs_inline=_getenv("JOBS_INLINE", "0") in ("1", "true", "yes"),
        autosave_debounce_seconds=_getenv_float("AUTOSAVE_DEBOUNCE_SECONDS", 2.0),
        media_per_page=_getenv_int("MEDIA_PER_PAGE", 20),
        users_per_page=_getenv_int("USERS_PER_PAGE", 50),
    )


def load_config() -> dict:
    s = load_settings()
    is_production = s.env in ("prod", "production")
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "STORAGE_BACKEND": s.storage_backend,
        "S3_ENDPOINT": s.s3_endpoint,
        "S3_REGION": s.s3_region,
        "S3_BUCKET": s.s3_bucket,
        "S3_EXPENSE_BUCKET": s.s3_expense_bucket,
        "S3_ACCESS_KEY_ID": s.s3_access_key_id,
        "S3_SECRET_ACCESS_KEY": s.s3_secret_access_key,
        "S3_PUBLIC_URL": s.s3_public_url,
        "BANK_ACCOUNT_KEY": s.bank_account_key,
        "JOBS_INLINE": s.jobs_inline,
        "AUTOSAVE_DEBOUNCE_SECONDS": s.autosave_debounce_seconds,
        "MEDIA_PER_PAGE": s.media_per_page,
        "USERS_PER_PAGE": s.users_per_page,
        # security defaults
        "SESSION_COOKIE_HTTPONLY": True,
        "SESSION_COOKIE_SAMESITE": "Lax",
        "SESSION_COOKIE_SECURE": is_production,
        # media batches of up to 10 images
        "MAX_CONTENT_LENGTH": 50 * 1024 * 1024,
    }
