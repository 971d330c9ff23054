"""
Restore engine: verify or apply an encrypted backup artifact.

Verification is side-effect free on the target database. It checks the
artifact digest, decrypts into a scratch directory and compares the digest
of the decrypted dump with the one recorded at backup time. The scratch
copy is always removed.
"""

import logging
import tempfile
import threading
from pathlib import Path
from typing import Optional

from .encryption import EncryptionCodec
from .exceptions import ChecksumMismatch, InvalidStateError
from .integrity import assert_checksum, calculate_checksum
from .models import BackupRecord
from .runner import DatabaseConnection, PgToolRunner

logger = logging.getLogger(__name__)


class RestoreEngine:
    """Composes the codec, checksum verifier and tool runner for restores."""

    def __init__(
        self,
        codec: EncryptionCodec,
        runner: PgToolRunner,
        scratch_dir: Optional[Path] = None,
    ):
        self.codec = codec
        self.runner = runner
        self.scratch_dir = scratch_dir

    def _check_artifact(self, record: BackupRecord) -> Path:
        artifact = Path(record.path) if record.path else None
        if artifact is None or not artifact.exists():
            raise InvalidStateError(
                f"Artifact for backup {record.backup_id} is missing: {record.path or '(no path)'}"
            )
        assert_checksum(artifact, record.checksum)
        return artifact

    def _decrypt_and_check(self, record: BackupRecord, artifact: Path, scratch: str) -> Path:
        dump_path = self.codec.decrypt(artifact, Path(scratch) / f"{record.backup_id}.dump")

        expected = (record.metadata or {}).get("dump_checksum")
        if expected:
            actual = calculate_checksum(dump_path)
            if actual != expected:
                raise ChecksumMismatch(dump_path, expected, actual)
        return dump_path

    def _scratch(self) -> tempfile.TemporaryDirectory:
        if self.scratch_dir is not None:
            Path(self.scratch_dir).mkdir(parents=True, exist_ok=True)
        return tempfile.TemporaryDirectory(
            prefix="restore_", dir=str(self.scratch_dir) if self.scratch_dir else None
        )

    def verify(self, record: BackupRecord) -> None:
        """
        Verify a completed backup without touching any database.

        Raises:
            InvalidStateError: If the artifact file is missing
            ChecksumMismatch: If the artifact or the decrypted dump is corrupted
            DecryptionFailure: If the artifact cannot be decrypted
        """
        artifact = self._check_artifact(record)
        with self._scratch() as scratch:
            self._decrypt_and_check(record, artifact, scratch)
        logger.info(f"Backup {record.backup_id} verified")

    def apply(
        self,
        record: BackupRecord,
        connection: DatabaseConnection,
        drop_existing: bool = False,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        """
        Verify the artifact, then restore it into connection.

        Raises:
            ChecksumMismatch, DecryptionFailure, RestoreFailure
        """
        artifact = self._check_artifact(record)
        with self._scratch() as scratch:
            dump_path = self._decrypt_and_check(record, artifact, scratch)
            self.runner.restore_from(
                dump_path,
                connection,
                drop_existing=drop_existing,
                cancel_event=cancel_event,
            )
        logger.info(f"Backup {record.backup_id} restored into {connection.identity}")
