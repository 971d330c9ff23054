"""
Metadata store for backup records.

A thin persistence port over the Django ORM. It holds no business rules;
lifecycle decisions belong to the orchestrator.
"""

import logging
from datetime import datetime
from typing import List, Optional

from django.db import models, transaction

from .models import BackupRecord

logger = logging.getLogger(__name__)

PERSISTED_FIELDS = [
    field.name
    for field in BackupRecord._meta.concrete_fields
    if field.name not in ("id", "backup_id")
]


class BackupMetadataStore:
    """Persist and query BackupRecord rows keyed by backup_id."""

    def upsert(self, record: BackupRecord) -> BackupRecord:
        """
        Insert or update the row for record.backup_id atomically.

        The primary key of record is refreshed from the stored row.
        """
        defaults = {name: getattr(record, name) for name in PERSISTED_FIELDS}

        with transaction.atomic():
            stored, created = BackupRecord.objects.update_or_create(
                backup_id=record.backup_id, defaults=defaults
            )

        record.pk = stored.pk
        logger.debug(
            f"{'Created' if created else 'Updated'} backup record {record.backup_id} "
            f"(status={record.status})"
        )
        return record

    def find(self, backup_id: str) -> Optional[BackupRecord]:
        return BackupRecord.objects.filter(backup_id=backup_id).first()

    def list(
        self,
        status: Optional[str] = None,
        backup_type: Optional[str] = None,
        created_before: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[BackupRecord]:
        """List records newest first, optionally filtered."""
        queryset = BackupRecord.objects.all().order_by("-timestamp")

        if status:
            queryset = queryset.filter(status=status)
        if backup_type:
            queryset = queryset.filter(backup_type=backup_type)
        if created_before:
            queryset = queryset.filter(timestamp__lt=created_before)
        if limit:
            queryset = queryset[:limit]

        return list(queryset)

    def delete(self, backup_id: str) -> bool:
        """Delete the row for backup_id. Returns True if a row was removed."""
        deleted, _ = BackupRecord.objects.filter(backup_id=backup_id).delete()
        return deleted > 0

    def aggregate_stats(self) -> dict:
        """
        Aggregate counts and sizes across all records.

        Returns:
            Dictionary with total/completed/failed/in-progress counts, the total
            artifact size of completed backups, the latest timestamp and
            counts per backup type
        """
        totals = BackupRecord.objects.aggregate(
            total=models.Count("id"),
            completed=models.Count("id", filter=models.Q(status=BackupRecord.COMPLETED)),
            failed=models.Count("id", filter=models.Q(status=BackupRecord.FAILED)),
            in_progress=models.Count(
                "id",
                filter=models.Q(status__in=[BackupRecord.PENDING, BackupRecord.RUNNING]),
            ),
            total_size=models.Sum(
                "size_bytes", filter=models.Q(status=BackupRecord.COMPLETED)
            ),
            last_backup=models.Max("timestamp"),
        )

        counts_by_type = {backup_type: 0 for backup_type, _ in BackupRecord.TYPE_CHOICES}
        for row in BackupRecord.objects.values("backup_type").annotate(count=models.Count("id")):
            counts_by_type[row["backup_type"]] = row["count"]

        return {
            "total": totals["total"],
            "completed": totals["completed"],
            "failed": totals["failed"],
            "in_progress": totals["in_progress"],
            "total_size_bytes": totals["total_size"] or 0,
            "last_backup": totals["last_backup"],
            "counts_by_type": counts_by_type,
        }
