"""Application-level exception types.

Convention:
- Every failure that aborts an operation derives from ``BackupError`` and carries a
  ``details`` mapping (path, byte offset, HTTP status, part) so a failed run can be
  diagnosed from the log line alone.
- Outcomes that are *not* failures (a run rejected because another one is active,
  a restore that needs a snapshot to be chosen) are returned as result objects by
  the services, never raised.
- Plain ``OSError``/``httpx`` errors are wrapped at the service boundary with
  ``raise ... from exc`` so the original cause stays attached.
"""

from __future__ import annotations

from typing import Any


class BackupError(Exception):
    """Base class for all autobackup failures."""

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = {key: value for key, value in details.items() if value is not None}

    def __str__(self) -> str:
        if not self.details:
            return self.message
        context = ", ".join(f"{key}={value}" for key, value in self.details.items())
        return f"{self.message} ({context})"


class ConfigurationError(BackupError):
    """Raised before any side effect when required settings are missing or invalid."""


class ScanError(BackupError):
    """Raised when the source tree cannot be walked or a file cannot be fingerprinted."""


class ArchiveError(BackupError):
    """Raised when a part file cannot be written or a source file cannot be archived."""


class UploadError(BackupError):
    """Raised when an upload session cannot be created or a chunk exhausts its retries.

    ``status_code`` and ``offset`` are exposed as attributes as well as details.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        offset: int | None = None,
        **details: Any,
    ) -> None:
        super().__init__(message, status_code=status_code, offset=offset, **details)
        self.status_code = status_code
        self.offset = offset


class CredentialError(BackupError):
    """Raised when no usable credential exists or a token exchange fails."""


class RestoreError(BackupError):
    """Raised when restore discovery or extraction fails; ``part`` names the culprit."""

    def __init__(self, message: str, *, part: str | None = None, **details: Any) -> None:
        super().__init__(message, part=part, **details)
        self.part = part
