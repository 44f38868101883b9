"""Ledger model: what the last successful run archived for each backup target."""

from __future__ import annotations

from sqlalchemy import Float, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from autobackup.models.base import Base


class FileRecord(Base):
    """Ledger entry for one non-directory path of a backup target."""

    __tablename__ = "file_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    path: Mapped[str] = mapped_column(Text, nullable=False)
    mod_time: Mapped[float] = mapped_column(Float, nullable=False)
    fingerprint: Mapped[str] = mapped_column(String, nullable=False, default="")
    backup_id: Mapped[str] = mapped_column(String, nullable=False)

    __table_args__ = (
        UniqueConstraint("path", "backup_id"),
        Index("ix_file_records_backup_id", "backup_id"),
    )
