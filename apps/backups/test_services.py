"""
Tests for the BackupService orchestrator.

These tests verify:
1. The create pipeline (dump -> checksum -> encrypt -> persist)
2. Failure handling: failed records, partial artifact cleanup, redaction
3. The single execution slot shared by backups and restores
4. Verify-only restores, real restores and the pre-restore safety backup
5. Deletion, listing, statistics and the encryption self-test
"""

import dataclasses
import re
import threading
from datetime import timedelta
from pathlib import Path
from unittest.mock import Mock, patch

from django.core.cache import cache
from django.db import connections
from django.test import override_settings
from django.utils import timezone

import pytest

from apps.backups.encryption import IV_SIZE
from apps.backups.exceptions import (
    BackupCancelled,
    ChecksumMismatch,
    ConcurrencyError,
    ConfigurationError,
    DumpFailure,
    EncryptionFailure,
    InvalidStateError,
    NotFoundError,
    RestoreFailure,
)
from apps.backups.integrity import calculate_checksum
from apps.backups.models import BackupRecord
from apps.backups.services import (
    EXECUTION_SLOT_KEY,
    RELEASE_SLOT_SCRIPT,
    BackupService,
    _redis_client,
    _release_slot,
)
from apps.core.audit_models import AuditLog

SHA256_RE = re.compile(r"[0-9a-f]{64}")


def assert_state_invariant():
    for record in BackupRecord.objects.all():
        if record.status == BackupRecord.COMPLETED:
            assert record.checksum
            assert record.size_bytes > 0
            assert Path(record.path).exists()
        elif record.status == BackupRecord.FAILED:
            assert record.error


def flip_byte(path, offset):
    data = bytearray(Path(path).read_bytes())
    data[offset] ^= 0x01
    Path(path).write_bytes(bytes(data))


@pytest.mark.django_db
class TestCreateBackup:
    def test_manual_backup_completes(self, backup_service, backup_dir):
        record = backup_service.create(BackupRecord.MANUAL)

        assert record.status == BackupRecord.COMPLETED
        assert record.backup_type == BackupRecord.MANUAL
        assert record.size_bytes > 0
        assert SHA256_RE.fullmatch(record.checksum)
        assert record.encrypted is True
        assert record.started_at is not None
        assert record.completed_at is not None
        assert record.created_by == "system"

        artifact = Path(record.path)
        assert artifact == backup_dir / f"{record.backup_id}.enc"
        assert artifact.stat().st_size == record.size_bytes
        assert calculate_checksum(artifact) == record.checksum

        stored = BackupRecord.objects.get(backup_id=record.backup_id)
        assert stored.status == BackupRecord.COMPLETED
        assert stored.checksum == record.checksum

    def test_artifact_is_encrypted_dump(self, backup_service, fake_runner):
        record = backup_service.create()
        data = Path(record.path).read_bytes()

        assert fake_runner.payload not in data
        # IV plus the padded dump
        assert len(data) == IV_SIZE + (len(fake_runner.payload) // 16 + 1) * 16

    def test_metadata_records_dump_digest(self, backup_service, fake_runner, db_connection):
        record = backup_service.create(reason="before price update")

        assert record.reason == "before price update"
        assert record.metadata["database"] == db_connection.name
        assert record.metadata["dump_size_bytes"] == len(fake_runner.payload)
        assert SHA256_RE.fullmatch(record.metadata["dump_checksum"])
        assert record.compression_ratio is not None
        assert db_connection.password not in str(record.metadata)

    def test_raw_dump_is_removed(self, backup_service, backup_dir):
        record = backup_service.create()
        assert not (backup_dir / f"{record.backup_id}.dump").exists()
        assert [p.name for p in backup_dir.iterdir() if p.is_file()] == [f"{record.backup_id}.enc"]

    def test_invalid_trigger(self, backup_service):
        with pytest.raises(ValueError):
            backup_service.create("hourly")
        assert BackupRecord.objects.count() == 0

    def test_user_is_recorded(self, backup_service, staff_user):
        record = backup_service.create(user=staff_user)
        assert record.created_by == staff_user.username

    def test_requires_encryption_key(self, fake_runner, backup_dir):
        with override_settings(BACKUP_ENCRYPTION_KEY=None):
            with pytest.raises(ConfigurationError):
                BackupService(runner=fake_runner, backup_dir=backup_dir)


@pytest.mark.django_db
class TestCreateBackupFailures:
    def test_dump_failure_persists_failed_record(self, backup_service, fake_runner, backup_dir):
        fake_runner.dump_error = DumpFailure(
            "pg_dump failed: connection to postgresql://pos:s3cret-pw@db/pos refused"
        )

        with pytest.raises(DumpFailure):
            backup_service.create()

        record = BackupRecord.objects.get()
        assert record.status == BackupRecord.FAILED
        assert record.error
        assert "s3cret-pw" not in record.error
        assert record.path == ""
        assert record.checksum == ""
        assert list(backup_dir.glob("*.enc")) == []
        assert_state_invariant()

    def test_encryption_failure_cleans_up(self, backup_service, backup_dir):
        with patch.object(
            backup_service.codec, "encrypt", side_effect=EncryptionFailure("disk full")
        ):
            with pytest.raises(EncryptionFailure):
                backup_service.create()

        record = BackupRecord.objects.get()
        assert record.status == BackupRecord.FAILED
        assert "disk full" in record.error
        assert [p for p in backup_dir.iterdir() if p.is_file()] == []

    def test_cancelled_backup_is_failed(self, backup_service, fake_runner):
        fake_runner.dump_error = BackupCancelled("pg_dump cancelled")

        with pytest.raises(BackupCancelled):
            backup_service.create()

        assert BackupRecord.objects.get().error == "pg_dump cancelled"

    def test_failure_releases_slot(self, backup_service, fake_runner):
        fake_runner.dump_error = DumpFailure("boom")
        with pytest.raises(DumpFailure):
            backup_service.create()

        assert not backup_service.is_busy()
        fake_runner.dump_error = None
        assert backup_service.create().is_completed()

    def test_failure_is_audited(self, backup_service, fake_runner):
        fake_runner.dump_error = DumpFailure("boom")
        with pytest.raises(DumpFailure):
            backup_service.create()

        entry = AuditLog.objects.get()
        assert entry.action == AuditLog.ACTION_BACKUP_CREATE
        assert entry.severity == AuditLog.SEVERITY_ERROR
        assert entry.description.startswith("FAILED")

    def test_unsaved_completion_ends_failed(self, backup_service, backup_dir):
        original_upsert = backup_service.store.upsert

        def upsert(record):
            if record.status == BackupRecord.COMPLETED:
                raise RuntimeError("db connection lost")
            return original_upsert(record)

        with patch.object(backup_service.store, "upsert", side_effect=upsert):
            with pytest.raises(RuntimeError, match="db connection lost"):
                backup_service.create()

        record = BackupRecord.objects.get()
        assert record.status == BackupRecord.FAILED
        assert record.completed_at is None
        assert "db connection lost" in record.error
        assert record.checksum == ""
        assert list(backup_dir.glob("*.enc")) == []
        assert AuditLog.objects.get().severity == AuditLog.SEVERITY_ERROR
        assert not backup_service.is_busy()
        assert_state_invariant()

    def test_original_error_survives_store_outage(self, backup_service, fake_runner):
        fake_runner.dump_error = DumpFailure("pg_dump: could not connect")
        original_upsert = backup_service.store.upsert

        def upsert(record):
            if record.status == BackupRecord.FAILED:
                raise RuntimeError("db connection lost")
            return original_upsert(record)

        with patch.object(backup_service.store, "upsert", side_effect=upsert):
            with pytest.raises(DumpFailure, match="could not connect"):
                backup_service.create()

        assert not backup_service.is_busy()


@pytest.mark.django_db(transaction=True)
class TestConcurrentBackups:
    def test_second_create_rejected_while_first_is_dumping(
        self, transactional_db, backup_service, fake_runner
    ):
        dump_started = threading.Event()
        release_dump = threading.Event()
        original_dump = fake_runner.dump
        outcome = {}

        def slow_dump(*args, **kwargs):
            dump_started.set()
            release_dump.wait(timeout=10)
            return original_dump(*args, **kwargs)

        def first_backup():
            try:
                outcome["record"] = backup_service.create(reason="first")
            except Exception as e:
                outcome["error"] = e
            finally:
                connections.close_all()

        fake_runner.dump = slow_dump
        worker = threading.Thread(target=first_backup)
        worker.start()
        try:
            assert dump_started.wait(timeout=10)
            assert backup_service.is_busy()
            with pytest.raises(ConcurrencyError):
                backup_service.create(reason="second")
        finally:
            release_dump.set()
            worker.join(timeout=10)

        assert "error" not in outcome
        assert outcome["record"].is_completed()
        record = BackupRecord.objects.get()
        assert record.backup_id == outcome["record"].backup_id
        assert record.status == BackupRecord.COMPLETED
        assert len(fake_runner.dumps) == 1
        assert not backup_service.is_busy()


@pytest.mark.django_db
class TestExecutionSlot:
    def test_release_leaves_another_owners_slot(self):
        cache.set(EXECUTION_SLOT_KEY, "backup_from_other_worker", timeout=60)
        _release_slot("backup_expired_here")
        assert cache.get(EXECUTION_SLOT_KEY) == "backup_from_other_worker"

    def test_release_is_compare_and_delete_on_redis(self):
        client = Mock()
        with patch("apps.backups.services._redis_client", return_value=client), patch(
            "apps.backups.services.cache"
        ) as mock_cache:
            mock_cache.make_key.return_value = ":1:backups:execution-slot"
            mock_cache.client.encode.return_value = b"encoded-owner"
            _release_slot("backup_x")

        client.eval.assert_called_once_with(
            RELEASE_SLOT_SCRIPT, 1, ":1:backups:execution-slot", b"encoded-owner"
        )
        mock_cache.client.encode.assert_called_once_with("backup_x")
        mock_cache.delete.assert_not_called()

    def test_locmem_cache_has_no_redis_client(self):
        assert _redis_client() is None

    def test_second_backup_is_rejected_while_slot_held(self, backup_service):
        running = BackupRecord(status=BackupRecord.RUNNING)
        backup_service.store.upsert(running)

        with backup_service.execution_slot(running.backup_id):
            assert backup_service.is_busy()
            with pytest.raises(ConcurrencyError):
                backup_service.create()

        # The running record is untouched and nothing new was written
        assert BackupRecord.objects.count() == 1
        assert BackupRecord.objects.get().status == BackupRecord.RUNNING
        assert not backup_service.is_busy()

    def test_slot_held_by_another_worker(self, backup_service):
        cache.set(EXECUTION_SLOT_KEY, "backup_from_other_worker", timeout=60)

        assert backup_service.is_busy()
        with pytest.raises(ConcurrencyError) as exc_info:
            backup_service.create()
        assert "backup_from_other_worker" in str(exc_info.value)

        # Another owner's slot is not released by the rejected caller
        assert cache.get(EXECUTION_SLOT_KEY) == "backup_from_other_worker"

    def test_restore_and_backup_share_the_slot(self, backup_service, completed_backup):
        with backup_service.execution_slot("restore:other"):
            with pytest.raises(ConcurrencyError):
                backup_service.restore(completed_backup.backup_id)

    def test_verify_only_does_not_need_the_slot(self, backup_service, completed_backup):
        with backup_service.execution_slot("backup:other"):
            backup_service.restore(completed_backup.backup_id, verify_only=True)

    def test_slot_released_after_error_in_block(self, backup_service):
        with pytest.raises(RuntimeError):
            with backup_service.execution_slot("owner"):
                raise RuntimeError("boom")
        assert cache.get(EXECUTION_SLOT_KEY) is None
        assert not backup_service.is_busy()


@pytest.mark.django_db
class TestVerifyOnlyRestore:
    def test_verify_valid_backup(self, backup_service, fake_runner, completed_backup):
        records_before = BackupRecord.objects.count()

        backup_service.restore(completed_backup.backup_id, verify_only=True)

        assert fake_runner.restores == []
        assert BackupRecord.objects.count() == records_before
        stored = BackupRecord.objects.get(backup_id=completed_backup.backup_id)
        assert stored.restored_at is None
        assert not AuditLog.objects.filter(action=AuditLog.ACTION_BACKUP_RESTORE).exists()

    def test_flipped_byte_is_checksum_mismatch(self, backup_service, fake_runner, completed_backup):
        flip_byte(completed_backup.path, IV_SIZE + 20)

        with pytest.raises(ChecksumMismatch):
            backup_service.restore(completed_backup.backup_id, verify_only=True)

        assert fake_runner.restores == []
        stored = BackupRecord.objects.get(backup_id=completed_backup.backup_id)
        assert stored.status == BackupRecord.COMPLETED

    def test_flipped_iv_byte_is_checksum_mismatch(self, backup_service, completed_backup):
        flip_byte(completed_backup.path, 0)
        with pytest.raises(ChecksumMismatch):
            backup_service.restore(completed_backup.backup_id, verify_only=True)

    def test_scratch_copy_is_removed(self, backup_service, backup_dir, completed_backup):
        backup_service.restore(completed_backup.backup_id, verify_only=True)
        assert list((backup_dir / "tmp").glob("**/*.dump")) == []

    def test_missing_artifact(self, backup_service, completed_backup):
        Path(completed_backup.path).unlink()
        with pytest.raises(InvalidStateError):
            backup_service.restore(completed_backup.backup_id, verify_only=True)


@pytest.mark.django_db
class TestRestore:
    def test_unknown_backup(self, backup_service, fake_runner, backup_dir):
        files_before = sorted(backup_dir.rglob("*"))

        with pytest.raises(NotFoundError):
            backup_service.restore("backup_does_not_exist", drop_existing=True)

        assert sorted(backup_dir.rglob("*")) == files_before
        assert BackupRecord.objects.count() == 0
        assert AuditLog.objects.count() == 0
        assert fake_runner.dumps == []
        assert fake_runner.restores == []

    def test_failed_backup_cannot_be_restored(self, backup_service, fake_runner):
        fake_runner.dump_error = DumpFailure("boom")
        with pytest.raises(DumpFailure):
            backup_service.create()
        failed = BackupRecord.objects.get()

        with pytest.raises(InvalidStateError):
            backup_service.restore(failed.backup_id)

    def test_safety_backup_precedes_restore(self, backup_service, fake_runner, completed_backup):
        safety_counts = []
        original_restore = fake_runner.restore_from

        def restore_from(*args, **kwargs):
            safety_counts.append(
                BackupRecord.objects.filter(
                    backup_type=BackupRecord.AUTOMATIC, status=BackupRecord.COMPLETED
                ).count()
            )
            return original_restore(*args, **kwargs)

        fake_runner.restore_from = restore_from

        backup_service.restore(completed_backup.backup_id, drop_existing=True)

        assert safety_counts == [1]
        safety = BackupRecord.objects.get(backup_type=BackupRecord.AUTOMATIC)
        assert completed_backup.backup_id in safety.reason
        assert Path(safety.path).exists()

    def test_restore_applies_decrypted_dump(self, backup_service, fake_runner, completed_backup, staff_user):
        backup_service.restore(completed_backup.backup_id, drop_existing=True, user=staff_user)

        assert len(fake_runner.restores) == 1
        applied = fake_runner.restores[0]
        assert applied["content"] == fake_runner.payload
        assert applied["drop_existing"] is True

        stored = BackupRecord.objects.get(backup_id=completed_backup.backup_id)
        assert stored.status == BackupRecord.COMPLETED
        assert stored.restored_at is not None
        assert stored.restored_by == staff_user.username

        entry = AuditLog.objects.get(action=AuditLog.ACTION_BACKUP_RESTORE)
        assert entry.user == staff_user
        assert entry.severity == AuditLog.SEVERITY_WARNING
        assert "safety_backup_id" in entry.metadata

    def test_restore_into_named_database(self, backup_service, fake_runner, completed_backup, db_connection):
        backup_service.restore(completed_backup.backup_id, target_store="pos_staging")

        target = fake_runner.restores[0]["connection"]
        assert target == dataclasses.replace(db_connection, name="pos_staging")
        # The safety backup is taken from the restore target
        assert fake_runner.dumps[-1] == target

    def test_restore_into_url(self, backup_service, fake_runner, completed_backup):
        backup_service.restore(
            completed_backup.backup_id, target_store="postgresql://ops:pw@replica:5433/pos_copy"
        )

        target = fake_runner.restores[0]["connection"]
        assert target.identity == "replica:5433/pos_copy"

    def test_restore_failure(self, backup_service, fake_runner, completed_backup):
        fake_runner.restore_error = RestoreFailure("pg_restore failed", returncode=1)

        with pytest.raises(RestoreFailure):
            backup_service.restore(completed_backup.backup_id)

        stored = BackupRecord.objects.get(backup_id=completed_backup.backup_id)
        assert stored.status == BackupRecord.COMPLETED
        assert stored.restored_at is None
        entry = AuditLog.objects.get(action=AuditLog.ACTION_BACKUP_RESTORE)
        assert entry.severity == AuditLog.SEVERITY_ERROR
        assert not backup_service.is_busy()

    def test_safety_backup_failure_aborts_restore(self, backup_service, fake_runner, completed_backup):
        fake_runner.dump_error = DumpFailure("target unreachable")

        with pytest.raises(DumpFailure):
            backup_service.restore(completed_backup.backup_id, drop_existing=True)

        assert fake_runner.restores == []
        assert BackupRecord.objects.get(backup_type=BackupRecord.AUTOMATIC).is_failed()

    def test_corrupted_artifact_is_not_applied(self, backup_service, fake_runner, completed_backup):
        flip_byte(completed_backup.path, IV_SIZE + 1)

        with pytest.raises(ChecksumMismatch):
            backup_service.restore(completed_backup.backup_id, drop_existing=True)

        assert fake_runner.restores == []


@pytest.mark.django_db
class TestDeleteAndQueries:
    def test_delete_removes_artifact_and_row(self, backup_service, completed_backup):
        backup_service.delete(completed_backup.backup_id)

        assert not Path(completed_backup.path).exists()
        assert not BackupRecord.objects.filter(backup_id=completed_backup.backup_id).exists()
        assert AuditLog.objects.filter(action=AuditLog.ACTION_BACKUP_DELETE).count() == 1

    def test_delete_failed_backup(self, backup_service, fake_runner):
        fake_runner.dump_error = DumpFailure("boom")
        with pytest.raises(DumpFailure):
            backup_service.create()

        backup_service.delete(BackupRecord.objects.get().backup_id)
        assert BackupRecord.objects.count() == 0

    def test_delete_running_backup_is_rejected(self, backup_service):
        running = backup_service.store.upsert(BackupRecord(status=BackupRecord.RUNNING))
        with pytest.raises(InvalidStateError):
            backup_service.delete(running.backup_id)

    def test_delete_unknown(self, backup_service):
        with pytest.raises(NotFoundError):
            backup_service.delete("backup_missing")

    def test_delete_keeps_row_when_file_removal_fails(self, backup_service, completed_backup):
        with patch("apps.backups.services.Path.unlink", side_effect=PermissionError("read-only")):
            with pytest.raises(PermissionError):
                backup_service.delete(completed_backup.backup_id)

        assert BackupRecord.objects.filter(backup_id=completed_backup.backup_id).exists()

    def test_get(self, backup_service, completed_backup):
        assert backup_service.get(completed_backup.backup_id).pk == completed_backup.pk
        with pytest.raises(NotFoundError):
            backup_service.get("backup_missing")

    def test_list_backups_newest_first(self, backup_service):
        first = backup_service.create()
        second = backup_service.create()

        ids = [r.backup_id for r in backup_service.list_backups()]
        assert ids == [second.backup_id, first.backup_id]

    def test_statistics(self, backup_service, fake_runner):
        completed = backup_service.create()
        backup_service.create(BackupRecord.SCHEDULED)
        fake_runner.dump_error = DumpFailure("boom")
        with pytest.raises(DumpFailure):
            backup_service.create(BackupRecord.AUTOMATIC, reason="bulk import")

        stats = backup_service.get_statistics()

        assert stats["total_backups"] == 3
        assert stats["successful_backups"] == 2
        assert stats["failed_backups"] == 1
        assert stats["running_backups"] == 0
        assert stats["active_backups"] == 0
        assert stats["total_size_bytes"] == completed.size_bytes * 2
        assert stats["last_backup"] is not None
        assert stats["backup_counts_by_type"] == {"manual": 1, "scheduled": 1, "automatic": 1}

    def test_statistics_reports_active_slot(self, backup_service):
        with backup_service.execution_slot("owner"):
            assert backup_service.get_statistics()["active_backups"] == 1

    def test_state_invariant_across_operations(self, backup_service, fake_runner):
        backup_service.create()
        fake_runner.dump_error = DumpFailure("boom")
        with pytest.raises(DumpFailure):
            backup_service.create()
        fake_runner.dump_error = None
        backup_service.create(BackupRecord.SCHEDULED)

        assert_state_invariant()


@pytest.mark.django_db
class TestAbandonedRecords:
    def aged_record(self, service, status, seconds):
        record = service.store.upsert(BackupRecord(status=status))
        BackupRecord.objects.filter(pk=record.pk).update(
            timestamp=timezone.now() - timedelta(seconds=seconds)
        )
        return record

    def test_abandoned_records_are_failed(self, backup_service, backup_dir):
        limit = backup_service.max_duration
        running = self.aged_record(backup_service, BackupRecord.RUNNING, limit + 5)
        pending = self.aged_record(backup_service, BackupRecord.PENDING, limit + 5)
        fresh = self.aged_record(backup_service, BackupRecord.RUNNING, 1)
        leftover = backup_dir / f"{running.backup_id}.dump"
        leftover.write_bytes(b"partial dump")

        assert backup_service.fail_stale_records() == 2

        for backup_id in (running.backup_id, pending.backup_id):
            stored = BackupRecord.objects.get(backup_id=backup_id)
            assert stored.status == BackupRecord.FAILED
            assert stored.error.startswith("Interrupted")
        assert BackupRecord.objects.get(backup_id=fresh.backup_id).status == BackupRecord.RUNNING
        assert not leftover.exists()
        assert backup_service.get_statistics()["running_backups"] == 1
        assert_state_invariant()

        # Once failed, the abandoned record can be deleted
        backup_service.delete(running.backup_id)
        assert not BackupRecord.objects.filter(backup_id=running.backup_id).exists()

    def test_nothing_failed_while_slot_held(self, backup_service):
        running = self.aged_record(
            backup_service, BackupRecord.RUNNING, backup_service.max_duration + 5
        )

        with backup_service.execution_slot("backup_in_progress"):
            assert backup_service.fail_stale_records() == 0

        assert BackupRecord.objects.get(backup_id=running.backup_id).status == BackupRecord.RUNNING

    def test_completed_and_failed_untouched(self, backup_service, completed_backup):
        BackupRecord.objects.filter(pk=completed_backup.pk).update(
            timestamp=timezone.now() - timedelta(days=1)
        )
        assert backup_service.fail_stale_records() == 0
        assert BackupRecord.objects.get(pk=completed_backup.pk).is_completed()


@pytest.mark.django_db
class TestSelfTestAndAudit:
    def test_self_test_passes(self, backup_service):
        assert backup_service.test_backup() == {
            "success": True,
            "message": "Backup self-test passed",
        }

    def test_self_test_reports_failure(self, backup_service):
        with patch.object(backup_service.codec, "encrypt", side_effect=EncryptionFailure("bad")):
            result = backup_service.test_backup()

        assert result["success"] is False
        assert "bad" in result["message"]

    def test_create_is_audited(self, backup_service, completed_backup):
        entry = AuditLog.objects.get(action=AuditLog.ACTION_BACKUP_CREATE)
        assert entry.object_id == completed_backup.backup_id
        assert entry.actor == "system"
        assert entry.category == AuditLog.CATEGORY_SYSTEM

    def test_audit_failure_does_not_fail_backup(self, fake_runner, backup_dir, db_connection):
        audit = Mock(side_effect=RuntimeError("audit store down"))
        service = BackupService(
            runner=fake_runner, backup_dir=backup_dir, connection=db_connection, audit=audit
        )

        record = service.create()

        assert record.is_completed()
        audit.assert_called_once()
