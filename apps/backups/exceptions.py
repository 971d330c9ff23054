"""
Error taxonomy for the backup engine.

Sub-components raise these typed errors. Only the orchestrator
(``BackupService``) catches them to clean up partial artifacts and persist
a failed record before re-raising to the caller.
"""

from typing import Optional


class BackupError(Exception):
    """Base class for all backup engine errors."""

    pass


class ConfigurationError(BackupError):
    """Raised when the encryption key or database connection is missing or invalid."""

    pass


class ConcurrencyError(BackupError):
    """Raised when another backup or restore already holds the execution slot."""

    pass


class ToolFailure(BackupError):
    """An external pg_dump/pg_restore invocation exited unsuccessfully."""

    def __init__(self, message: str, returncode: Optional[int] = None, stderr: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


class DumpFailure(ToolFailure):
    """Raised when pg_dump fails."""

    pass


class RestoreFailure(ToolFailure):
    """Raised when pg_restore fails."""

    pass


class BackupCancelled(DumpFailure, RestoreFailure):
    """Raised when a running tool was killed by cancellation or timeout."""

    pass


class ArtifactTooLarge(DumpFailure):
    """Raised when a dump exceeds BACKUP_MAX_SIZE_BYTES."""

    pass


class EncryptionFailure(BackupError):
    pass


class DecryptionFailure(BackupError):
    pass


class ChecksumMismatch(BackupError):
    """Raised when a file digest does not match the recorded one."""

    def __init__(self, path, expected: str, actual: str):
        super().__init__(f"Checksum mismatch for {path}: expected {expected}, got {actual}")
        self.path = path
        self.expected = expected
        self.actual = actual


class NotFoundError(BackupError):
    """Raised when a backup_id is unknown."""

    pass


class InvalidStateError(BackupError):
    """Raised on restore of a non-completed record or an illegal status transition."""

    pass
