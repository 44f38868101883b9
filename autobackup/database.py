"""Database engine and session management."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING

from sqlalchemy import create_engine as sa_create_engine
from sqlalchemy.orm import Session, sessionmaker

from autobackup.models import Base

if TYPE_CHECKING:
    from sqlalchemy.engine import Engine

    from autobackup.config import Settings

logger = logging.getLogger(__name__)


def _ensure_sqlite_dir(database_url: str) -> None:
    if not database_url.startswith("sqlite"):
        return
    db_path = database_url.split("///", 1)[-1] if "///" in database_url else ""
    if db_path and db_path != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)


def create_engine(settings: Settings) -> tuple[Engine, sessionmaker[Session]]:
    """Create the engine and session factory.

    Returns (engine, session_factory) tuple. Sessions are used from the backup
    worker, the scheduler and the token refresher, so SQLite connections are
    allowed to cross threads.
    """
    _ensure_sqlite_dir(settings.database_url)
    connect_args: dict[str, object] = {}
    if settings.database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = sa_create_engine(
        settings.database_url,
        echo=settings.debug,
        connect_args=connect_args,
    )
    session_factory = sessionmaker(engine, class_=Session, expire_on_commit=False)
    return engine, session_factory


def init_db(engine: Engine) -> None:
    """Create all tables that do not exist yet."""
    try:
        Base.metadata.create_all(engine)
    except Exception as exc:
        logger.critical("Failed to create database schema: %s.", exc)
        raise
