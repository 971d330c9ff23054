"""
Audit logging models for the POS platform.

Backup, restore and delete operations are recorded here so operators can
see who touched the data store and when.
"""

import uuid

from django.conf import settings
from django.db import models


class AuditLog(models.Model):
    """
    Audit log for administrative and system actions.
    """

    # Action categories
    CATEGORY_ADMIN = "ADMIN"
    CATEGORY_SYSTEM = "SYSTEM"

    CATEGORY_CHOICES = [
        (CATEGORY_ADMIN, "Administrative Action"),
        (CATEGORY_SYSTEM, "System Event"),
    ]

    # Backup actions
    ACTION_BACKUP_CREATE = "BACKUP_CREATE"
    ACTION_BACKUP_DELETE = "BACKUP_DELETE"
    ACTION_BACKUP_RESTORE = "BACKUP_RESTORE"

    ACTION_CHOICES = [
        (ACTION_BACKUP_CREATE, "Backup Created"),
        (ACTION_BACKUP_DELETE, "Backup Deleted"),
        (ACTION_BACKUP_RESTORE, "Backup Restored"),
    ]

    # Severity levels
    SEVERITY_INFO = "INFO"
    SEVERITY_WARNING = "WARNING"
    SEVERITY_ERROR = "ERROR"
    SEVERITY_CRITICAL = "CRITICAL"

    SEVERITY_CHOICES = [
        (SEVERITY_INFO, "Info"),
        (SEVERITY_WARNING, "Warning"),
        (SEVERITY_ERROR, "Error"),
        (SEVERITY_CRITICAL, "Critical"),
    ]

    id = models.UUIDField(
        primary_key=True,
        default=uuid.uuid4,
        editable=False,
        help_text="Unique identifier for the audit log entry",
    )

    # User who performed the action (null for scheduled/system actions)
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="audit_logs_performed",
        help_text="User who performed the action",
    )

    actor = models.CharField(
        max_length=150,
        blank=True,
        help_text="Display name of the actor (username or 'system')",
    )

    category = models.CharField(
        max_length=20,
        choices=CATEGORY_CHOICES,
        db_index=True,
        help_text="Category of the action",
    )

    action = models.CharField(
        max_length=50,
        choices=ACTION_CHOICES,
        db_index=True,
        help_text="Specific action performed",
    )

    severity = models.CharField(
        max_length=20,
        choices=SEVERITY_CHOICES,
        default=SEVERITY_INFO,
        db_index=True,
        help_text="Severity level of the action",
    )

    description = models.TextField(
        help_text="Human-readable description of the action",
    )

    object_id = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        help_text="ID of the affected object",
    )

    metadata = models.JSONField(
        null=True,
        blank=True,
        help_text="Additional metadata (JSON format, secrets redacted)",
    )

    timestamp = models.DateTimeField(
        auto_now_add=True,
        db_index=True,
        help_text="When the action occurred",
    )

    class Meta:
        db_table = "audit_logs"
        ordering = ["-timestamp"]
        verbose_name = "Audit Log"
        verbose_name_plural = "Audit Logs"
        indexes = [
            models.Index(fields=["user", "-timestamp"], name="auditlog_user_time_idx"),
            models.Index(fields=["action", "-timestamp"], name="auditlog_action_time_idx"),
            models.Index(fields=["severity", "-timestamp"], name="auditlog_severity_time_idx"),
        ]

    def __str__(self):
        return f"{self.action} by {self.actor or 'System'} at {self.timestamp}"
