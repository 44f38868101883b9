"""Shared test fixtures for autobackup."""

from __future__ import annotations

import os
from typing import TYPE_CHECKING

import pytest

from autobackup.config import Settings
from autobackup.database import create_engine, init_db
from autobackup.services.buffer_pool import BufferPool

if TYPE_CHECKING:
    from collections.abc import Callable, Generator
    from pathlib import Path

    from sqlalchemy.orm import Session, sessionmaker

TEST_SECRET_KEY = "test-secret-key-with-at-least-32-characters"


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Settings pointing at temporary directories, isolated from env files."""
    source = tmp_path / "source"
    source.mkdir()
    return Settings(
        _env_file=None,
        secret_key=TEST_SECRET_KEY,
        database_url=f"sqlite:///{tmp_path / 'db' / 'autobackup.db'}",
        source_dir=str(source),
        output_dir=str(tmp_path / "parts"),
        client_id="client-id",
        client_secret="client-secret",
    )


@pytest.fixture
def session_factory(test_settings: Settings) -> Generator[sessionmaker[Session]]:
    engine, factory = create_engine(test_settings)
    init_db(engine)
    yield factory
    engine.dispose()


@pytest.fixture
def pool() -> BufferPool:
    return BufferPool(buffer_size=64 * 1024, max_idle=4)


@pytest.fixture
def write_file() -> Callable[..., Path]:
    """Write *content* to *path* (creating parents) and pin its mtime."""

    def _write(path: Path, content: bytes | str, mtime: int = 1_700_000_000) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        data = content.encode() if isinstance(content, str) else content
        path.write_bytes(data)
        os.utime(path, (mtime, mtime))
        return path

    return _write
