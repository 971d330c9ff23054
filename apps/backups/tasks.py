"""
Celery tasks for the backup system.

HTTP handlers and event hooks never run a backup inline; they enqueue one
of these tasks and the worker drives BackupService synchronously:
- Manual and automatic (event-triggered) backups
- The scheduled nightly backup followed by retention pruning
- Restores
- On-demand cleanup of expired backups
"""

import logging
from typing import Optional

from django.contrib.auth import get_user_model

from celery import shared_task

from .exceptions import BackupError, ConcurrencyError
from .models import BackupRecord
from .retention import RetentionManager
from .services import get_backup_service

logger = logging.getLogger(__name__)


def _get_user(user_id: Optional[int]):
    if user_id is None:
        return None
    User = get_user_model()
    user = User.objects.filter(id=user_id).first()
    if user is None:
        logger.warning(f"User {user_id} not found, recording action as system")
    return user


def _record_summary(record: BackupRecord) -> dict:
    return {
        "backup_id": record.backup_id,
        "status": record.status,
        "size_bytes": record.size_bytes,
        "checksum": record.checksum,
    }


@shared_task(
    bind=True,
    name="apps.backups.tasks.create_backup_task",
)
def create_backup_task(
    self,
    trigger: str = BackupRecord.MANUAL,
    reason: Optional[str] = None,
    user_id: Optional[int] = None,
):
    """
    Create a backup in the worker.

    Args:
        trigger: manual, scheduled or automatic
        reason: Why the backup was triggered
        user_id: ID of user who initiated the backup (None for system triggers)

    Returns:
        Summary of the completed backup
    """
    logger.info(f"Task {self.request.id}: creating {trigger} backup")
    record = get_backup_service().create(trigger=trigger, reason=reason, user=_get_user(user_id))
    return _record_summary(record)


@shared_task(
    bind=True,
    name="apps.backups.tasks.automatic_backup",
)
def automatic_backup(self, reason: str):
    """
    Event-triggered backup (e.g. before a data migration or bulk import).

    Returns:
        Summary of the completed backup, or None if another backup was running
    """
    try:
        record = get_backup_service().create(trigger=BackupRecord.AUTOMATIC, reason=reason)
    except ConcurrencyError as e:
        logger.warning(f"Automatic backup skipped ({reason}): {e}")
        return None
    return _record_summary(record)


@shared_task(
    bind=True,
    name="apps.backups.tasks.scheduled_backup",
)
def scheduled_backup(self):
    """
    Nightly backup run by Celery beat.

    Errors are logged rather than raised so beat keeps its schedule; the
    failed BackupRecord is still persisted by the service. Retention pruning
    runs after every scheduled attempt.

    Returns:
        Dictionary with the backup summary (or error), the number of
        abandoned records marked failed and the prune count
    """
    logger.info("=" * 80)
    logger.info("Starting scheduled database backup")
    logger.info("=" * 80)

    service = get_backup_service()
    result = {"backup": None, "error": None, "pruned": 0, "recovered": 0}

    try:
        result["recovered"] = service.fail_stale_records()
    except Exception as e:
        logger.error(f"Failed to recover abandoned backups: {e}", exc_info=True)

    try:
        record = service.create(trigger=BackupRecord.SCHEDULED, reason="Scheduled backup")
        result["backup"] = _record_summary(record)
    except BackupError as e:
        logger.error(f"Scheduled backup failed: {e}")
        result["error"] = str(e)
    except Exception as e:
        logger.error(f"Scheduled backup failed unexpectedly: {e}", exc_info=True)
        result["error"] = str(e)

    result["pruned"] = RetentionManager(service).prune_older_than()
    return result


@shared_task(
    bind=True,
    name="apps.backups.tasks.restore_backup_task",
)
def restore_backup_task(
    self,
    backup_id: str,
    target_store: Optional[str] = None,
    drop_existing: bool = False,
    verify_only: bool = False,
    user_id: Optional[int] = None,
):
    """
    Restore (or verify) a backup in the worker.

    Returns:
        Dictionary describing the finished operation
    """
    logger.info(
        f"Task {self.request.id}: {'verifying' if verify_only else 'restoring'} backup {backup_id}"
    )
    get_backup_service().restore(
        backup_id,
        target_store=target_store,
        drop_existing=drop_existing,
        verify_only=verify_only,
        user=_get_user(user_id),
    )
    return {"backup_id": backup_id, "verified_only": verify_only, "success": True}


@shared_task(
    bind=True,
    name="apps.backups.tasks.cleanup_old_backups",
)
def cleanup_old_backups(self, days: Optional[int] = None):
    """
    Delete completed backups older than the retention window.

    Abandoned pending/running records are marked failed first.

    Returns:
        Number of backups deleted
    """
    service = get_backup_service()
    service.fail_stale_records()
    return RetentionManager(service).prune_older_than(days)
