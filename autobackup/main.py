"""Service wiring and process lifecycle."""

from __future__ import annotations

import logging
import sys
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING

from autobackup.database import create_engine, init_db
from autobackup.services.backup_service import BackupJob, BackupOrchestrator
from autobackup.services.buffer_pool import BufferPool
from autobackup.services.credential_service import CredentialManager, SqlCredentialStore
from autobackup.services.upload_service import UploadPipeline

if TYPE_CHECKING:
    from collections.abc import Callable

    from sqlalchemy.engine import Engine
    from sqlalchemy.orm import Session, sessionmaker

    from autobackup.config import Settings

logger = logging.getLogger(__name__)

SHUTDOWN_GRACE_SECONDS = 5.0


def _configure_logging(debug: bool, log_file: str | None = None) -> None:
    """Configure application logging."""
    level = logging.DEBUG if debug else logging.INFO
    fmt = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"
    if log_file:
        logging.basicConfig(level=level, format=fmt, filename=log_file, force=True)
    else:
        logging.basicConfig(level=level, format=fmt, stream=sys.stdout, force=True)
    # Quiet noisy libraries
    logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO if debug else logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.INFO if debug else logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.INFO if debug else logging.WARNING)


@dataclass
class Application:
    """Everything a running service owns."""

    settings: Settings
    engine: Engine
    session_factory: sessionmaker[Session]
    pool: BufferPool
    orchestrator: BackupOrchestrator
    credentials: CredentialManager | None = None
    uploader: UploadPipeline | None = None


def build_application(settings: Settings) -> Application:
    """Validate settings, open the database and construct the services."""
    settings.validate_runtime()
    try:
        engine, session_factory = create_engine(settings)
    except Exception as exc:
        logger.critical(
            "Failed to initialize database: %s. Check database path and permissions.", exc
        )
        raise
    init_db(engine)

    pool = BufferPool()
    credentials: CredentialManager | None = None
    uploader: UploadPipeline | None = None
    if settings.upload_enabled:
        store = SqlCredentialStore(session_factory, settings.secret_key)
        credentials = CredentialManager(settings, store)
        uploader = UploadPipeline(
            credentials.fresh_access_token, chunk_size=settings.upload_chunk_size
        )

    orchestrator = BackupOrchestrator(
        BackupJob.from_settings(settings),
        session_factory,
        pool,
        uploader=uploader,
        remote_folder=settings.remote_base_path,
        part_size_limit=settings.part_size_limit,
        workers=settings.archive_workers,
    )
    return Application(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        pool=pool,
        orchestrator=orchestrator,
        credentials=credentials,
        uploader=uploader,
    )


def link_account(
    app: Application, code_reader: Callable[[CredentialManager, str], None] | None = None
) -> None:
    """Load or obtain the storage credential and start its background refresh.

    When no credential is stored, *code_reader* is started on a daemon thread
    with the authorize URL so the code can be delivered while bootstrap waits.
    Does nothing when uploads are disabled.
    """
    credentials = app.credentials
    if credentials is None:
        return

    def _start_reader(url: str) -> None:
        if code_reader is None:
            return
        threading.Thread(
            target=code_reader, args=(credentials, url), name="auth-code-reader", daemon=True
        ).start()

    credentials.bootstrap(on_authorization_required=_start_reader)
    credentials.start_background_refresh()


def start(
    app: Application, code_reader: Callable[[CredentialManager, str], None] | None = None
) -> None:
    """Link the account, run once if configured, then start the cron schedule."""
    link_account(app, code_reader)
    if app.settings.run_on_start:
        app.orchestrator.run_logged()
    app.orchestrator.start_schedule(app.settings.backup_cron)


def shutdown(app: Application, grace: float = SHUTDOWN_GRACE_SECONDS) -> None:
    """Stop the schedule and background workers and release resources."""
    logger.info("Shutting down")
    app.orchestrator.stop_schedule(wait=False)
    if app.credentials is not None:
        app.credentials.shutdown(grace)
    if app.uploader is not None:
        app.uploader.close()
    app.engine.dispose()
