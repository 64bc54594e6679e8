from collections.abc import AsyncIterator
import logging
import os

from sqlalchemy import text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from app.settings import settings

logger = logging.getLogger(__name__)

POOL_MODES = {"null", "queue"}
_NULL_POOL_ENVS = {"test", "development", "dev", "local"}

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def resolve_pool_mode(raw_mode: str) -> str:
    mode = (raw_mode or "").strip().lower()
    if mode in POOL_MODES:
        return mode
    if mode == "auto":
        app_env = (os.getenv("APP_ENV") or "").strip().lower()
        if os.getenv("PYTEST_CURRENT_TEST") or app_env in _NULL_POOL_ENVS:
            return "null"
        return "queue"
    logger.warning(
        "db.invalid_pool_mode_fallback",
        extra={"database_pool_mode": raw_mode, "fallback_mode": "queue"},
    )
    return "queue"


def engine_options(database_url: str, pool_mode: str) -> dict[str, object]:
    url = make_url(database_url)
    if url.get_backend_name() == "sqlite":
        return {}
    options: dict[str, object] = {"pool_pre_ping": True}
    if url.get_driver_name() == "asyncpg":
        options["connect_args"] = {"server_settings": {"application_name": settings.app_name}}
    if pool_mode == "null":
        options["poolclass"] = NullPool
        return options
    options.update(
        pool_size=max(1, int(settings.database_pool_size)),
        max_overflow=max(0, int(settings.database_pool_max_overflow)),
        pool_timeout=max(1, int(settings.database_pool_timeout_seconds)),
    )
    return options


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        pool_mode = resolve_pool_mode(settings.database_pool_mode)
        _engine = create_async_engine(
            settings.database_url,
            **engine_options(settings.database_url, pool_mode),
        )
        logger.info("db.engine_initialized", extra={"pool_mode": pool_mode})
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(get_engine(), expire_on_commit=False)
    return _session_factory


async def get_db_session() -> AsyncIterator[AsyncSession]:
    async with get_session_factory()() as session:
        yield session


async def check_database() -> bool:
    try:
        async with get_engine().connect() as conn:
            return (await conn.execute(text("SELECT 1"))).scalar_one() == 1
    except Exception:
        logger.exception("db.healthcheck_failed")
        return False


async def close_engine() -> None:
    global _engine, _session_factory
    if _engine is None:
        return
    await _engine.dispose()
    logger.info("db.engine_disposed")
    _engine = None
    _session_factory = None
