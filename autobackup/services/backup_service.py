"""Backup orchestration: change set, archive, upload, ledger commit, schedule."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from autobackup.exceptions import BackupError, ConfigurationError
from autobackup.services.archive_service import (
    DEFAULT_PART_SIZE_LIMIT,
    DEFAULT_WORKERS,
    ArchiveBuilder,
    PartArtifact,
)
from autobackup.services.changeset_service import resolve_changes
from autobackup.services.ledger_service import load_records, replace_records

if TYPE_CHECKING:
    from collections.abc import Callable

    from apscheduler.schedulers.base import BaseScheduler
    from sqlalchemy.orm import Session, sessionmaker

    from autobackup.config import Settings
    from autobackup.services.archive_service import Uploader
    from autobackup.services.buffer_pool import BufferPool

logger = logging.getLogger(__name__)


class RunStatus(StrEnum):
    COMPLETED = "completed"
    NO_CHANGES = "no_changes"
    ALREADY_RUNNING = "already_running"


@dataclass
class BackupRunResult:
    status: RunStatus
    backup_id: str
    changed_files: int = 0
    parts: list[PartArtifact] = field(default_factory=list)


@dataclass(frozen=True)
class BackupJob:
    """What to back up and where the parts go."""

    source_dir: str
    output_dir: str
    password: str = ""
    force_full: bool = False

    @classmethod
    def from_settings(cls, settings: Settings) -> BackupJob:
        return cls(
            source_dir=settings.source_dir,
            output_dir=settings.output_dir,
            password=settings.backup_password,
            force_full=settings.force_full_backup,
        )

    def validate(self) -> None:
        if not self.source_dir.strip() or not self.output_dir.strip():
            raise ConfigurationError(
                "Source and output directories must both be set",
                source_dir=self.source_dir,
                output_dir=self.output_dir,
            )

    @property
    def source_path(self) -> Path:
        return Path(self.source_dir).resolve()

    @property
    def output_path(self) -> Path:
        return Path(self.output_dir)

    @property
    def backup_id(self) -> str:
        """Backups are identified by the name of the source root directory."""
        return self.source_path.name


class BackupOrchestrator:
    """Run backups of one job, never more than one at a time."""

    def __init__(
        self,
        job: BackupJob,
        session_factory: sessionmaker[Session],
        pool: BufferPool,
        *,
        uploader: Uploader | None = None,
        remote_folder: str = "",
        part_size_limit: int = DEFAULT_PART_SIZE_LIMIT,
        workers: int = DEFAULT_WORKERS,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.job = job
        self._session_factory = session_factory
        self._pool = pool
        self._uploader = uploader
        self._remote_folder = remote_folder
        self._part_size_limit = part_size_limit
        self._workers = workers
        self._clock = clock
        self._run_lock = threading.Lock()
        self._scheduler: BaseScheduler | None = None

    @property
    def is_running(self) -> bool:
        return self._run_lock.locked()

    def run(self) -> BackupRunResult:
        """Perform one backup run.

        Returns ALREADY_RUNNING immediately when another run holds the lock. The
        ledger is only replaced after every part was written and uploaded.
        """
        self.job.validate()
        backup_id = self.job.backup_id
        if not self._run_lock.acquire(blocking=False):
            logger.warning("Backup of %s is already running, skipping this request", backup_id)
            return BackupRunResult(RunStatus.ALREADY_RUNNING, backup_id)
        try:
            return self._run_locked(backup_id)
        finally:
            self._run_lock.release()

    def _run_locked(self, backup_id: str) -> BackupRunResult:
        source = self.job.source_path
        logger.info("Starting backup of %s", source)
        with self._session_factory() as session:
            ledger = load_records(session, backup_id)

        changes = resolve_changes(source, ledger, self._pool, force_full=self.job.force_full)
        if not changes:
            logger.info("No changes in %s since the last backup", source)
            return BackupRunResult(RunStatus.NO_CHANGES, backup_id)

        builder = ArchiveBuilder(
            self.job.output_path,
            backup_id,
            self._pool,
            password=self.job.password,
            part_size_limit=self._part_size_limit,
            workers=self._workers,
            uploader=self._uploader,
            remote_folder=self._remote_folder,
            clock=self._clock,
        )
        parts = builder.build(source, changes.paths, changes.empty_dirs)
        replace_records(self._session_factory, backup_id, changes.snapshot)
        logger.info(
            "Backup of %s completed: %d changed file(s) in %d part(s)",
            backup_id,
            len(changes),
            len(parts),
        )
        return BackupRunResult(RunStatus.COMPLETED, backup_id, len(changes), parts)

    def run_logged(self) -> None:
        """Run once, logging failures instead of raising them (scheduler entry point)."""
        try:
            result = self.run()
        except BackupError as exc:
            logger.error("Backup run failed: %s", exc)
        except Exception:
            logger.exception("Backup run failed unexpectedly")
        else:
            logger.info("Backup run finished: %s", result.status)

    def start_schedule(self, cron: str, scheduler: BaseScheduler | None = None) -> None:
        """Run :meth:`run` on the crontab expression *cron*.

        Overlapping firings are let through the scheduler and rejected by the run
        lock, so a long run shows up in the log instead of being silently dropped.
        """
        try:
            trigger = CronTrigger.from_crontab(cron)
        except ValueError as exc:
            raise ConfigurationError("Invalid cron expression", cron=cron) from exc
        self._scheduler = scheduler or BackgroundScheduler()
        self._scheduler.add_job(
            self.run_logged,
            trigger,
            id=f"backup-{self.job.backup_id}",
            max_instances=2,
            replace_existing=True,
        )
        if not self._scheduler.running:
            self._scheduler.start()
        logger.info("Backup of %s scheduled with '%s'", self.job.backup_id, cron)

    def stop_schedule(self, wait: bool = True) -> None:
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=wait)
        self._scheduler = None
