"""SQLAlchemy ORM models for autobackup."""

from autobackup.models.base import Base
from autobackup.models.credential import AuthInfo
from autobackup.models.file_record import FileRecord

__all__ = [
    "AuthInfo",
    "Base",
    "FileRecord",
]
