# consent_vault/db.py
from __future__ import annotations

from urllib.parse import urlsplit

import structlog
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, DeclarativeBase
from sqlalchemy.pool import StaticPool

from .config import Settings

logger = structlog.get_logger()


class Base(DeclarativeBase):
    pass


def _safe_url(url: str) -> str:
    parts = urlsplit(url)
    if parts.password:
        return f"{parts.scheme}://{parts.username}:***@{parts.hostname}:{parts.port}{parts.path}"
    return url


def make_engine(settings: Settings) -> Engine:
    url = settings.database_url
    logger.info("db_engine", url=_safe_url(url))

    if url.startswith("sqlite"):
        # in-memory SQLite must share one connection across sessions
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url or url.rstrip("/") == "sqlite:":
            kwargs["poolclass"] = StaticPool
        return create_engine(url, future=True, **kwargs)

    # For Postgres we don't pass SQLite-only args like check_same_thread.
    return create_engine(
        url,
        pool_pre_ping=True,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_timeout=settings.db_pool_timeout,
        future=True,
    )


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False, future=True)
