"""
Retention policy for completed backups.
"""

import logging
from datetime import timedelta
from typing import Optional

from django.conf import settings
from django.utils import timezone

from .models import BackupRecord

logger = logging.getLogger(__name__)


class RetentionManager:
    """
    Prune completed backups older than the retention window.

    Pending, running and failed records are never touched. Each record is
    deleted through BackupService.delete so the artifact and the metadata
    row go together.
    """

    def __init__(self, service):
        self.service = service

    def prune_older_than(self, days: Optional[int] = None) -> int:
        """
        Delete completed backups with a timestamp older than now - days.

        Args:
            days: Retention window (defaults to BACKUP_RETENTION_DAYS)

        Returns:
            Number of backups deleted
        """
        if days is None:
            days = getattr(settings, "BACKUP_RETENTION_DAYS", 30)
        if days < 0:
            raise ValueError(f"Retention days must not be negative: {days}")

        cutoff = timezone.now() - timedelta(days=days)
        expired = self.service.store.list(
            status=BackupRecord.COMPLETED, created_before=cutoff
        )

        logger.info(f"Found {len(expired)} backups older than {days} days to prune")

        deleted = 0
        for record in expired:
            try:
                self.service.delete(record.backup_id)
                deleted += 1
            except Exception as e:
                logger.error(f"Failed to prune backup {record.backup_id}: {e}")

        logger.info(f"Pruned {deleted} of {len(expired)} expired backups")
        return deleted
