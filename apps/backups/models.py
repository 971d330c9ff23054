"""
Backup models for the POS platform.

One BackupRecord row is written per backup attempt. Its status only moves
forward (pending -> running -> completed/failed) and only the backup
orchestrator performs those transitions.
"""

import secrets

from django.db import models
from django.utils import timezone

from .exceptions import InvalidStateError


def generate_backup_id() -> str:
    """
    Generate a unique external backup identifier.

    Format: backup_<UTC timestamp>_<8 hex chars>, e.g.
    backup_2024-01-15T02-00-00-123Z_1a2b3c4d
    """
    now = timezone.now()
    stamp = now.strftime("%Y-%m-%dT%H-%M-%S-") + f"{now.microsecond // 1000:03d}Z"
    return f"backup_{stamp}_{secrets.token_hex(4)}"


class BackupRecord(models.Model):
    """
    Track one backup attempt and its encrypted artifact.

    Invariants:
    - COMPLETED implies a non-empty checksum, size_bytes > 0 and an artifact on disk
    - FAILED implies a non-empty error
    """

    # Trigger types
    MANUAL = "manual"
    SCHEDULED = "scheduled"
    AUTOMATIC = "automatic"

    TYPE_CHOICES = [
        (MANUAL, "Manual"),
        (SCHEDULED, "Scheduled"),
        (AUTOMATIC, "Automatic"),
    ]

    # Status choices
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    STATUS_CHOICES = [
        (PENDING, "Pending"),
        (RUNNING, "Running"),
        (COMPLETED, "Completed"),
        (FAILED, "Failed"),
    ]

    ALLOWED_TRANSITIONS = {
        PENDING: {RUNNING, FAILED},
        RUNNING: {COMPLETED, FAILED},
        COMPLETED: set(),
        FAILED: set(),
    }

    backup_id = models.CharField(
        max_length=64,
        unique=True,
        default=generate_backup_id,
        editable=False,
        help_text="Stable external identifier for the backup",
    )

    timestamp = models.DateTimeField(
        default=timezone.now,
        editable=False,
        db_index=True,
        help_text="Timestamp when the backup was created",
    )

    backup_type = models.CharField(
        max_length=20,
        choices=TYPE_CHOICES,
        default=MANUAL,
        help_text="What triggered the backup",
    )

    status = models.CharField(
        max_length=20,
        choices=STATUS_CHOICES,
        default=PENDING,
        help_text="Current status of the backup operation",
    )

    size_bytes = models.BigIntegerField(
        default=0,
        help_text="Size of the encrypted artifact in bytes",
    )

    checksum = models.CharField(
        max_length=64,
        blank=True,
        default="",
        help_text="SHA-256 checksum of the encrypted artifact",
    )

    encrypted = models.BooleanField(default=True)

    duration_ms = models.BigIntegerField(
        default=0,
        help_text="Wall-clock duration of the backup pipeline in milliseconds",
    )

    error = models.TextField(
        blank=True,
        default="",
        help_text="Failure cause if the backup failed",
    )

    path = models.CharField(
        max_length=500,
        blank=True,
        default="",
        help_text="Filesystem location of the encrypted artifact",
    )

    reason = models.TextField(
        blank=True,
        default="",
        help_text="Why the backup was triggered (automatic backups, notes)",
    )

    # Descriptive fields
    database_version = models.CharField(max_length=100, blank=True, null=True)
    schema_version = models.CharField(max_length=100, blank=True, null=True)
    record_count = models.BigIntegerField(blank=True, null=True)
    compression_ratio = models.FloatField(
        blank=True,
        null=True,
        help_text="Artifact size divided by raw dump size",
    )
    started_at = models.DateTimeField(blank=True, null=True)
    completed_at = models.DateTimeField(blank=True, null=True)
    restored_at = models.DateTimeField(blank=True, null=True)
    restored_by = models.CharField(max_length=150, blank=True, null=True)
    created_by = models.CharField(max_length=150, blank=True, null=True)
    branch_id = models.CharField(max_length=64, blank=True, null=True)

    metadata = models.JSONField(
        default=dict,
        blank=True,
        help_text="Additional metadata (database name, dump size, dump checksum, etc.)",
    )

    class Meta:
        db_table = "backups_backup_record"
        ordering = ["-timestamp"]
        indexes = [
            models.Index(fields=["status", "timestamp"], name="backup_status_ts_idx"),
            models.Index(fields=["backup_type", "-timestamp"], name="backup_type_ts_idx"),
        ]
        verbose_name = "Backup"
        verbose_name_plural = "Backups"

    def __str__(self):
        return f"{self.backup_id} ({self.backup_type}, {self.status})"

    def is_completed(self):
        return self.status == self.COMPLETED

    def is_failed(self):
        return self.status == self.FAILED

    def is_terminal(self):
        return self.status in (self.COMPLETED, self.FAILED)

    def get_size_mb(self):
        """Get backup size in megabytes."""
        return round(self.size_bytes / (1024 * 1024), 2)

    def transition_to(self, status: str) -> None:
        """
        Move to a new status, enforcing the forward-only lifecycle.

        Does not save; the caller persists the record.

        Raises:
            InvalidStateError: If the transition is not allowed
        """
        if status not in self.ALLOWED_TRANSITIONS.get(self.status, set()):
            raise InvalidStateError(
                f"Cannot move backup {self.backup_id} from {self.status} to {status}"
            )

        now = timezone.now()
        if status == self.RUNNING:
            self.started_at = now
        elif status == self.COMPLETED:
            self.completed_at = now
        self.status = status
