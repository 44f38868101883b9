"""Ledger persistence: the per-target snapshot of the last successful run."""

from __future__ import annotations

import logging
from itertools import islice
from typing import TYPE_CHECKING

from sqlalchemy import delete, insert, select

from autobackup.models.file_record import FileRecord
from autobackup.services.changeset_service import FileState

if TYPE_CHECKING:
    from collections.abc import Mapping

    from sqlalchemy.orm import Session, sessionmaker

logger = logging.getLogger(__name__)

INSERT_BATCH_SIZE = 1000


def load_records(session: Session, backup_id: str) -> dict[str, FileState]:
    """Load the ledger for *backup_id* keyed by source-relative path."""
    stmt = select(FileRecord).where(FileRecord.backup_id == backup_id)
    records: dict[str, FileState] = {}
    for row in session.scalars(stmt):
        records[row.path] = FileState(mod_time=row.mod_time, fingerprint=row.fingerprint)
    return records


def delete_records(session: Session, backup_id: str) -> int:
    """Delete every ledger row of *backup_id*. Returns the number of rows removed."""
    result = session.execute(delete(FileRecord).where(FileRecord.backup_id == backup_id))
    return result.rowcount or 0


def batch_insert_records(
    session: Session,
    backup_id: str,
    records: Mapping[str, FileState],
    batch_size: int = INSERT_BATCH_SIZE,
) -> int:
    """Insert *records* in batches of *batch_size* rows. Does not commit."""
    items = iter(sorted(records.items()))
    inserted = 0
    while batch := list(islice(items, batch_size)):
        session.execute(
            insert(FileRecord),
            [
                {
                    "path": path,
                    "mod_time": state.mod_time,
                    "fingerprint": state.fingerprint,
                    "backup_id": backup_id,
                }
                for path, state in batch
            ],
        )
        inserted += len(batch)
    return inserted


def replace_records(
    session_factory: sessionmaker[Session],
    backup_id: str,
    records: Mapping[str, FileState],
) -> None:
    """Replace the whole ledger of *backup_id* in one transaction.

    Either every row is swapped or the previous snapshot is left untouched.
    """
    with session_factory() as session, session.begin():
        removed = delete_records(session, backup_id)
        inserted = batch_insert_records(session, backup_id, records)
    logger.info(
        "Ledger for %s replaced: %d rows removed, %d rows written", backup_id, removed, inserted
    )
