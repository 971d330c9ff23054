import django.utils.timezone
from django.db import migrations, models

import apps.backups.models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="BackupRecord",
            fields=[
                (
                    "id",
                    models.BigAutoField(
                        auto_created=True, primary_key=True, serialize=False, verbose_name="ID"
                    ),
                ),
                (
                    "backup_id",
                    models.CharField(
                        default=apps.backups.models.generate_backup_id,
                        editable=False,
                        help_text="Stable external identifier for the backup",
                        max_length=64,
                        unique=True,
                    ),
                ),
                (
                    "timestamp",
                    models.DateTimeField(
                        db_index=True,
                        default=django.utils.timezone.now,
                        editable=False,
                        help_text="Timestamp when the backup was created",
                    ),
                ),
                (
                    "backup_type",
                    models.CharField(
                        choices=[
                            ("manual", "Manual"),
                            ("scheduled", "Scheduled"),
                            ("automatic", "Automatic"),
                        ],
                        default="manual",
                        help_text="What triggered the backup",
                        max_length=20,
                    ),
                ),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("running", "Running"),
                            ("completed", "Completed"),
                            ("failed", "Failed"),
                        ],
                        default="pending",
                        help_text="Current status of the backup operation",
                        max_length=20,
                    ),
                ),
                (
                    "size_bytes",
                    models.BigIntegerField(
                        default=0, help_text="Size of the encrypted artifact in bytes"
                    ),
                ),
                (
                    "checksum",
                    models.CharField(
                        blank=True,
                        default="",
                        help_text="SHA-256 checksum of the encrypted artifact",
                        max_length=64,
                    ),
                ),
                ("encrypted", models.BooleanField(default=True)),
                (
                    "duration_ms",
                    models.BigIntegerField(
                        default=0,
                        help_text="Wall-clock duration of the backup pipeline in milliseconds",
                    ),
                ),
                (
                    "error",
                    models.TextField(
                        blank=True, default="", help_text="Failure cause if the backup failed"
                    ),
                ),
                (
                    "path",
                    models.CharField(
                        blank=True,
                        default="",
                        help_text="Filesystem location of the encrypted artifact",
                        max_length=500,
                    ),
                ),
                (
                    "reason",
                    models.TextField(
                        blank=True,
                        default="",
                        help_text="Why the backup was triggered (automatic backups, notes)",
                    ),
                ),
                ("database_version", models.CharField(blank=True, max_length=100, null=True)),
                ("schema_version", models.CharField(blank=True, max_length=100, null=True)),
                ("record_count", models.BigIntegerField(blank=True, null=True)),
                (
                    "compression_ratio",
                    models.FloatField(
                        blank=True, help_text="Artifact size divided by raw dump size", null=True
                    ),
                ),
                ("started_at", models.DateTimeField(blank=True, null=True)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                ("restored_at", models.DateTimeField(blank=True, null=True)),
                ("restored_by", models.CharField(blank=True, max_length=150, null=True)),
                ("created_by", models.CharField(blank=True, max_length=150, null=True)),
                ("branch_id", models.CharField(blank=True, max_length=64, null=True)),
                (
                    "metadata",
                    models.JSONField(
                        blank=True,
                        default=dict,
                        help_text="Additional metadata (database name, dump size, dump checksum, etc.)",
                    ),
                ),
            ],
            options={
                "verbose_name": "Backup",
                "verbose_name_plural": "Backups",
                "db_table": "backups_backup_record",
                "ordering": ["-timestamp"],
                "indexes": [
                    models.Index(fields=["status", "timestamp"], name="backup_status_ts_idx"),
                    models.Index(fields=["backup_type", "-timestamp"], name="backup_type_ts_idx"),
                ],
            },
        ),
    ]
