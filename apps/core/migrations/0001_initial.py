import uuid

import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="AuditLog",
            fields=[
                (
                    "id",
                    models.UUIDField(
                        default=uuid.uuid4,
                        editable=False,
                        help_text="Unique identifier for the audit log entry",
                        primary_key=True,
                        serialize=False,
                    ),
                ),
                (
                    "actor",
                    models.CharField(
                        blank=True,
                        help_text="Display name of the actor (username or 'system')",
                        max_length=150,
                    ),
                ),
                (
                    "category",
                    models.CharField(
                        choices=[("ADMIN", "Administrative Action"), ("SYSTEM", "System Event")],
                        db_index=True,
                        help_text="Category of the action",
                        max_length=20,
                    ),
                ),
                (
                    "action",
                    models.CharField(
                        choices=[
                            ("BACKUP_CREATE", "Backup Created"),
                            ("BACKUP_DELETE", "Backup Deleted"),
                            ("BACKUP_RESTORE", "Backup Restored"),
                        ],
                        db_index=True,
                        help_text="Specific action performed",
                        max_length=50,
                    ),
                ),
                (
                    "severity",
                    models.CharField(
                        choices=[
                            ("INFO", "Info"),
                            ("WARNING", "Warning"),
                            ("ERROR", "Error"),
                            ("CRITICAL", "Critical"),
                        ],
                        db_index=True,
                        default="INFO",
                        help_text="Severity level of the action",
                        max_length=20,
                    ),
                ),
                (
                    "description",
                    models.TextField(help_text="Human-readable description of the action"),
                ),
                (
                    "object_id",
                    models.CharField(
                        blank=True, help_text="ID of the affected object", max_length=255, null=True
                    ),
                ),
                (
                    "metadata",
                    models.JSONField(
                        blank=True,
                        help_text="Additional metadata (JSON format, secrets redacted)",
                        null=True,
                    ),
                ),
                (
                    "timestamp",
                    models.DateTimeField(
                        auto_now_add=True, db_index=True, help_text="When the action occurred"
                    ),
                ),
                (
                    "user",
                    models.ForeignKey(
                        blank=True,
                        help_text="User who performed the action",
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="audit_logs_performed",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "verbose_name": "Audit Log",
                "verbose_name_plural": "Audit Logs",
                "db_table": "audit_logs",
                "ordering": ["-timestamp"],
                "indexes": [
                    models.Index(fields=["user", "-timestamp"], name="auditlog_user_time_idx"),
                    models.Index(fields=["action", "-timestamp"], name="auditlog_action_time_idx"),
                    models.Index(
                        fields=["severity", "-timestamp"], name="auditlog_severity_time_idx"
                    ),
                ],
            },
        ),
    ]
