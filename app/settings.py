from dataclasses import dataclass
import os

DEFAULT_MANGADEX_USER_AGENT = "mangasync-catalog-sync/1.0"


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    return int(value)


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    return float(value)


def _env_str(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip() or default


@dataclass(frozen=True)
class Settings:
    app_name: str = os.getenv("APP_NAME", "mangasync")
    database_url: str = os.getenv(
        "DATABASE_URL",
        "postgresql+asyncpg://mangasync:mangasync@db:5432/mangasync",
    )
    database_pool_mode: str = _env_str("DATABASE_POOL_MODE", "auto")
    database_pool_size: int = _env_int("DATABASE_POOL_SIZE", 5)
    database_pool_max_overflow: int = _env_int("DATABASE_POOL_MAX_OVERFLOW", 10)
    database_pool_timeout_seconds: int = _env_int("DATABASE_POOL_TIMEOUT_SECONDS", 30)
    log_level: str = _env_str("LOG_LEVEL", "INFO")
    log_format: str = _env_str("LOG_FORMAT", "console")
    log_requests: bool = _env_bool("LOG_REQUESTS", True)
    log_uvicorn_access: bool = _env_bool("LOG_UVICORN_ACCESS", False)
    log_request_skip_paths: str = _env_str("LOG_REQUEST_SKIP_PATHS", "/healthz")
    log_redact_fields: str = os.getenv("LOG_REDACT_FIELDS", "")
    admin_secret: str = os.getenv("ADMIN_SECRET", "").strip()
    cron_token: str = os.getenv("CRON_TOKEN", "").strip()
    mangadex_api_base_url: str = _env_str("MANGADEX_API_BASE_URL", "https://api.mangadex.org")
    mangadex_uploads_base_url: str = _env_str(
        "MANGADEX_UPLOADS_BASE_URL",
        "https://uploads.mangadex.org",
    )
    mangadex_user_agent: str = _env_str("MANGADEX_USER_AGENT", DEFAULT_MANGADEX_USER_AGENT)
    mangadex_timeout_seconds: float = _env_float("MANGADEX_TIMEOUT_SECONDS", 20.0)
    mangadex_window_cap: int = _env_int("MANGADEX_WINDOW_CAP", 10_000)
    mangadex_content_ratings: str = _env_str("MANGADEX_CONTENT_RATINGS", "safe,suggestive")
    sync_default_page_limit: int = _env_int("SYNC_DEFAULT_PAGE_LIMIT", 100)
    sync_default_max_pages: int = _env_int("SYNC_DEFAULT_MAX_PAGES", 5)
    sync_default_time_budget_seconds: float = _env_float("SYNC_DEFAULT_TIME_BUDGET_SECONDS", 50.0)
    sync_default_hard_cap: int = _env_int("SYNC_DEFAULT_HARD_CAP", 500)
    sync_sample_size: int = _env_int("SYNC_SAMPLE_SIZE", 25)
    sync_build_stamp: str = _env_str("SYNC_BUILD_STAMP", "dev")
    cover_storage_dir: str = _env_str("COVER_STORAGE_DIR", "/data/covers")
    cover_public_base_url: str = _env_str("COVER_PUBLIC_BASE_URL", "/media/covers")
    art_jobs_batch_size: int = _env_int("ART_JOBS_BATCH_SIZE", 10)
    art_jobs_max_attempts: int = _env_int("ART_JOBS_MAX_ATTEMPTS", 5)
    aggregate_batch_size: int = _env_int("AGGREGATE_BATCH_SIZE", 25)
    scheduler_enabled: bool = _env_bool("SCHEDULER_ENABLED", False)
    scheduler_tick_seconds: int = _env_int("SCHEDULER_TICK_SECONDS", 300)
    scheduler_feeds: str = _env_str("SCHEDULER_FEEDS", "catalog,activity")
    scheduler_art_jobs_enabled: bool = _env_bool("SCHEDULER_ART_JOBS_ENABLED", True)


settings = Settings()
