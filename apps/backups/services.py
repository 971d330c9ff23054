"""
Service layer for backup operations.

BackupService is the backup orchestrator. It owns the lifecycle of every
BackupRecord, holds the single execution slot shared by backup and restore
pipelines, and is the only place where sub-component errors are caught to
clean up partial artifacts and persist a failed record.
"""

import dataclasses
import json
import logging
import tempfile
import threading
import time
from contextlib import contextmanager
from datetime import timedelta
from pathlib import Path
from typing import List, Optional

from django.conf import settings
from django.core.cache import cache
from django.db import transaction
from django.utils import timezone

from apps.core.audit import get_actor_name, log_backup_action
from apps.core.audit_models import AuditLog

from .encryption import EncryptionCodec
from .exceptions import (
    ConcurrencyError,
    EncryptionFailure,
    InvalidStateError,
    NotFoundError,
)
from .integrity import assert_checksum, calculate_checksum
from .models import BackupRecord
from .restore import RestoreEngine
from .runner import DatabaseConnection, PgToolRunner, redact_secrets
from .store import BackupMetadataStore

logger = logging.getLogger(__name__)

EXECUTION_SLOT_KEY = "backups:execution-slot"
LIST_LIMIT = 100

# Guards the slot inside one process; the cache entry guards it across workers.
_process_slot = threading.Lock()

# Compare-and-delete: only the owner that still holds the slot may release it
RELEASE_SLOT_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


def _redis_client():
    """Raw Redis connection when the default cache is django-redis, else None."""
    backend = settings.CACHES.get("default", {}).get("BACKEND", "")
    if not backend.startswith("django_redis"):
        return None

    from django_redis import get_redis_connection

    return get_redis_connection("default")


def _release_slot(owner: str) -> None:
    client = _redis_client()
    if client is not None:
        client.eval(
            RELEASE_SLOT_SCRIPT,
            1,
            cache.make_key(EXECUTION_SLOT_KEY),
            cache.client.encode(owner),
        )
    elif cache.get(EXECUTION_SLOT_KEY) == owner:
        # Non-Redis caches are process-local and _process_slot is held here
        cache.delete(EXECUTION_SLOT_KEY)


class BackupService:
    """Orchestrates backup creation, restore, listing and deletion."""

    def __init__(
        self,
        store: Optional[BackupMetadataStore] = None,
        codec: Optional[EncryptionCodec] = None,
        runner: Optional[PgToolRunner] = None,
        backup_dir: Optional[Path] = None,
        connection: Optional[DatabaseConnection] = None,
        audit=None,
    ):
        self.max_duration = getattr(settings, "BACKUP_MAX_DURATION_SECONDS", 3600)
        self.store = store or BackupMetadataStore()
        # Refuses to start without a valid key (ConfigurationError)
        self.codec = codec or EncryptionCodec()
        self.runner = runner or PgToolRunner(
            timeout=self.max_duration,
            max_size_bytes=getattr(settings, "BACKUP_MAX_SIZE_BYTES", None),
        )
        self.backup_dir = Path(backup_dir or settings.BACKUP_LOCAL_PATH)
        self._connection = connection
        self.audit = audit or log_backup_action
        self.restore_engine = RestoreEngine(
            self.codec, self.runner, scratch_dir=self.backup_dir / "tmp"
        )

    @property
    def connection(self) -> DatabaseConnection:
        if self._connection is None:
            self._connection = DatabaseConnection.from_settings()
        return self._connection

    def resolve_target(self, target_store: Optional[str]) -> DatabaseConnection:
        """A URL selects another server; a bare name selects another database on the default one."""
        if not target_store:
            return self.connection
        if "://" in target_store:
            return DatabaseConnection.from_url(target_store)
        return dataclasses.replace(self.connection, name=target_store)

    # ------------------------------------------------------------------
    # Execution slot
    # ------------------------------------------------------------------

    @contextmanager
    def execution_slot(self, owner: str):
        """
        Hold the global backup/restore slot for the duration of the block.

        Raises:
            ConcurrencyError: If another pipeline holds the slot
        """
        if not _process_slot.acquire(blocking=False):
            raise ConcurrencyError("Another backup or restore is already running")

        try:
            # Expiry frees the slot if a worker dies mid-run
            if not cache.add(EXECUTION_SLOT_KEY, owner, timeout=self.max_duration + 60):
                holder = cache.get(EXECUTION_SLOT_KEY)
                raise ConcurrencyError(
                    f"Another backup or restore is already running ({holder or 'unknown'})"
                )

            logger.debug(f"Acquired execution slot for {owner}")
            try:
                yield
            finally:
                _release_slot(owner)
                logger.debug(f"Released execution slot for {owner}")
        finally:
            _process_slot.release()

    def is_busy(self) -> bool:
        return _process_slot.locked() or cache.get(EXECUTION_SLOT_KEY) is not None

    # ------------------------------------------------------------------
    # Backup pipeline
    # ------------------------------------------------------------------

    def create(
        self,
        trigger: str = BackupRecord.MANUAL,
        reason: Optional[str] = None,
        user=None,
        cancel_event: Optional[threading.Event] = None,
        connection: Optional[DatabaseConnection] = None,
    ) -> BackupRecord:
        """
        Create an encrypted backup of the database.

        Args:
            trigger: manual, scheduled or automatic
            reason: Why the backup was triggered
            user: User who triggered the backup (None for system triggers)
            cancel_event: Set to cancel the running dump
            connection: Database to back up (defaults to the configured one)

        Returns:
            The completed BackupRecord

        Raises:
            ConcurrencyError: If another backup or restore is running
            BackupError: Any pipeline failure, after the failed record is persisted
        """
        valid_triggers = {choice for choice, _ in BackupRecord.TYPE_CHOICES}
        if trigger not in valid_triggers:
            raise ValueError(f"Invalid backup trigger: {trigger}")

        connection = connection or self.connection
        record = self._new_record(trigger, reason, user)

        with self.execution_slot(record.backup_id):
            self._run_backup(record, connection, cancel_event)

        return record

    def _new_record(self, trigger: str, reason: Optional[str], user) -> BackupRecord:
        return BackupRecord(
            backup_type=trigger,
            status=BackupRecord.PENDING,
            reason=reason or "",
            created_by=get_actor_name(user),
            encrypted=True,
        )

    def _run_backup(
        self,
        record: BackupRecord,
        connection: DatabaseConnection,
        cancel_event: Optional[threading.Event],
        user=None,
    ) -> BackupRecord:
        """Drive dump -> checksum -> encrypt -> persist. Caller holds the slot."""
        start = time.monotonic()
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        dump_path = self.backup_dir / f"{record.backup_id}.dump"
        artifact_path = self.backup_dir / f"{record.backup_id}.enc"

        self.store.upsert(record)
        record.transition_to(BackupRecord.RUNNING)
        self.store.upsert(record)

        logger.info(
            f"Starting {record.backup_type} backup {record.backup_id}"
            + (f" ({record.reason})" if record.reason else "")
        )

        try:
            # Step 1: Dump
            self.runner.dump(connection, dump_path, cancel_event=cancel_event)
            dump_size = dump_path.stat().st_size
            dump_checksum = calculate_checksum(dump_path)

            # Step 2: Encrypt
            self.codec.encrypt(dump_path, artifact_path)

            # Step 3: Checksum the artifact
            checksum = calculate_checksum(artifact_path)
            assert_checksum(artifact_path, checksum)
            size = artifact_path.stat().st_size
            if size <= 0:
                raise EncryptionFailure(f"Encrypted artifact is empty: {artifact_path}")

            # Step 4: Persist completed
            record.path = str(artifact_path)
            record.size_bytes = size
            record.checksum = checksum
            record.compression_ratio = round(size / dump_size, 4) if dump_size else None
            record.metadata = {
                "database": connection.name,
                "host": connection.host,
                "dump_format": "custom",
                "dump_size_bytes": dump_size,
                "dump_checksum": dump_checksum,
            }
            record.duration_ms = int((time.monotonic() - start) * 1000)
            record.transition_to(BackupRecord.COMPLETED)
            self.store.upsert(record)

        except Exception as e:
            artifact_path.unlink(missing_ok=True)

            record.error = redact_secrets(str(e), connection.password) or e.__class__.__name__
            record.path = ""
            record.size_bytes = 0
            record.checksum = ""
            record.duration_ms = int((time.monotonic() - start) * 1000)
            if record.is_completed():
                # Completion was never persisted; the artifact is already gone
                record.status = BackupRecord.FAILED
                record.completed_at = None
            else:
                record.transition_to(BackupRecord.FAILED)

            try:
                self.store.upsert(record)
            except Exception as store_error:
                logger.error(
                    f"Could not persist failed backup {record.backup_id}: {store_error}"
                )

            logger.error(f"Backup {record.backup_id} failed: {record.error}", exc_info=True)
            self._audit(
                AuditLog.ACTION_BACKUP_CREATE,
                user or record.created_by,
                record.backup_id,
                {"type": record.backup_type, "error": record.error},
                success=False,
            )
            raise

        finally:
            dump_path.unlink(missing_ok=True)

        logger.info(
            f"Backup {record.backup_id} completed: {size} bytes in {record.duration_ms} ms "
            f"(checksum: {checksum[:16]}...)"
        )
        self._audit(
            AuditLog.ACTION_BACKUP_CREATE,
            user or record.created_by,
            record.backup_id,
            {"type": record.backup_type, "size_bytes": size, "reason": record.reason},
        )
        return record

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------

    def restore(
        self,
        backup_id: str,
        target_store: Optional[str] = None,
        drop_existing: bool = False,
        verify_only: bool = False,
        user=None,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        """
        Restore a completed backup, or only verify it.

        A real restore first takes an automatic safety backup of the target,
        so a bad restore can always be undone. Verify-only mode decrypts to a
        scratch location and compares checksums; it never runs pg_restore and
        never writes metadata.

        Raises:
            NotFoundError: If backup_id is unknown
            InvalidStateError: If the backup is not completed
            ConcurrencyError: If another backup or restore is running
            ChecksumMismatch, DecryptionFailure, RestoreFailure, DumpFailure
        """
        record = self.store.find(backup_id)
        if record is None:
            raise NotFoundError(f"Backup not found: {backup_id}")

        if not record.is_completed():
            raise InvalidStateError(
                f"Backup is not ready for restore: {backup_id} (status: {record.status})"
            )

        if verify_only:
            logger.info(f"Verifying backup {backup_id}")
            self.restore_engine.verify(record)
            return

        connection = self.resolve_target(target_store)
        logger.info(
            f"Restoring backup {backup_id} into {connection.identity}"
            + (" (dropping existing objects)" if drop_existing else "")
        )

        details = {"target": connection.identity, "drop_existing": drop_existing}

        try:
            with self.execution_slot(f"restore:{backup_id}"):
                safety = self._new_record(
                    BackupRecord.AUTOMATIC,
                    f"Safety backup before restoring {backup_id}",
                    user,
                )
                self._run_backup(safety, connection, cancel_event, user=user)
                details["safety_backup_id"] = safety.backup_id

                self.restore_engine.apply(
                    record, connection, drop_existing=drop_existing, cancel_event=cancel_event
                )

                record.restored_at = timezone.now()
                record.restored_by = get_actor_name(user)
                self.store.upsert(record)

        except ConcurrencyError:
            raise
        except Exception as e:
            logger.error(f"Restore of backup {backup_id} failed: {e}")
            details["error"] = redact_secrets(str(e), connection.password)
            self._audit(AuditLog.ACTION_BACKUP_RESTORE, user, backup_id, details, success=False)
            raise

        logger.info(f"Backup {backup_id} restored")
        self._audit(AuditLog.ACTION_BACKUP_RESTORE, user, backup_id, details)

    # ------------------------------------------------------------------
    # Crash recovery
    # ------------------------------------------------------------------

    def fail_stale_records(self) -> int:
        """
        Mark pending/running records abandoned by a crashed worker as failed.

        A record is stale when it is older than BACKUP_MAX_DURATION_SECONDS
        and no pipeline holds the execution slot. Leftover dump and artifact
        files are removed.

        Returns:
            Number of records marked failed
        """
        if self.is_busy():
            return 0

        cutoff = timezone.now() - timedelta(seconds=self.max_duration)
        failed = 0
        for status in (BackupRecord.PENDING, BackupRecord.RUNNING):
            for record in self.store.list(status=status, created_before=cutoff):
                for suffix in (".dump", ".enc"):
                    (self.backup_dir / f"{record.backup_id}{suffix}").unlink(missing_ok=True)

                record.error = (
                    f"Interrupted: still {status} after {self.max_duration} seconds"
                )
                record.path = ""
                record.transition_to(BackupRecord.FAILED)
                self.store.upsert(record)
                failed += 1
                logger.warning(f"Marked abandoned backup {record.backup_id} as failed")

        return failed

    # ------------------------------------------------------------------
    # Queries and deletion
    # ------------------------------------------------------------------

    def list_backups(self) -> List[BackupRecord]:
        return self.store.list(limit=LIST_LIMIT)

    def get(self, backup_id: str) -> BackupRecord:
        record = self.store.find(backup_id)
        if record is None:
            raise NotFoundError(f"Backup not found: {backup_id}")
        return record

    def get_statistics(self) -> dict:
        """
        Get backup system statistics.

        Returns:
            Dictionary with backup statistics
        """
        stats = self.store.aggregate_stats()
        return {
            "total_backups": stats["total"],
            "successful_backups": stats["completed"],
            "failed_backups": stats["failed"],
            "running_backups": stats["in_progress"],
            "last_backup": stats["last_backup"],
            "total_size_bytes": stats["total_size_bytes"],
            "total_size_gb": round(stats["total_size_bytes"] / (1024**3), 2),
            "active_backups": 1 if self.is_busy() else 0,
            "backup_counts_by_type": stats["counts_by_type"],
        }

    def delete(self, backup_id: str, user=None) -> None:
        """
        Delete a backup's artifact and metadata together.

        Raises:
            NotFoundError: If backup_id is unknown
            InvalidStateError: If the backup is still pending or running
        """
        record = self.store.find(backup_id)
        if record is None:
            raise NotFoundError(f"Backup not found: {backup_id}")

        if not record.is_terminal():
            raise InvalidStateError(
                f"Cannot delete backup {backup_id} while it is {record.status}"
            )

        # Row deletion rolls back if the file cannot be removed
        with transaction.atomic():
            self.store.delete(backup_id)
            if record.path:
                Path(record.path).unlink(missing_ok=True)

        logger.info(f"Deleted backup {backup_id}")
        self._audit(
            AuditLog.ACTION_BACKUP_DELETE,
            user,
            backup_id,
            {"type": record.backup_type, "status": record.status},
        )

    # ------------------------------------------------------------------
    # Self-test
    # ------------------------------------------------------------------

    def test_backup(self) -> dict:
        """
        Round-trip a small sample payload through the encryption codec.

        Returns:
            {"success": bool, "message": str}
        """
        sample = {"test": True, "timestamp": timezone.now().isoformat()}

        try:
            with tempfile.TemporaryDirectory(prefix="backup_test_") as temp_dir:
                sample_path = Path(temp_dir) / "sample.json"
                sample_path.write_text(json.dumps(sample))

                encrypted = self.codec.encrypt(sample_path, Path(temp_dir) / "sample.json.enc")
                decrypted = self.codec.decrypt(encrypted, Path(temp_dir) / "sample.out.json")

                if json.loads(decrypted.read_text()) != sample:
                    return {
                        "success": False,
                        "message": "Encryption round trip returned different data",
                    }

        except Exception as e:
            logger.error(f"Backup self-test failed: {e}")
            return {"success": False, "message": f"Backup self-test failed: {e}"}

        return {"success": True, "message": "Backup self-test passed"}

    def _audit(self, action, user, backup_id, details, success=True):
        # Audit failures never fail the operation being audited
        try:
            self.audit(action=action, user=user, backup_id=backup_id, details=details, success=success)
        except Exception as e:
            logger.warning(f"Failed to write audit log for {backup_id}: {e}")


def get_backup_service() -> BackupService:
    """Build a BackupService from settings."""
    return BackupService()
