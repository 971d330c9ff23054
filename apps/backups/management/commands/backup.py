"""
Management command for backup operations.

Usage:
    python manage.py backup create [--reason REASON] [--async]
    python manage.py backup restore <backup_id> [target_store] [--drop-existing] [--verify-only]
    python manage.py backup list
    python manage.py backup stats
    python manage.py backup delete <backup_id>
    python manage.py backup prune [--days N]
    python manage.py backup test

Used by operators, by the CI/CD pipeline before deployments and by the
disaster recovery runbook.
"""

import json

from django.core.management.base import BaseCommand, CommandError

from apps.backups.exceptions import BackupError
from apps.backups.models import BackupRecord
from apps.backups.retention import RetentionManager
from apps.backups.services import get_backup_service
from apps.backups.tasks import create_backup_task


class Command(BaseCommand):
    help = "Create, restore, list, delete and prune database backups"

    def add_arguments(self, parser):
        subparsers = parser.add_subparsers(dest="action", required=True)

        create = subparsers.add_parser("create", help="Create a manual backup")
        create.add_argument("--reason", type=str, default=None, help="Why the backup is taken")
        create.add_argument(
            "--async",
            action="store_true",
            dest="run_async",
            help="Run backup asynchronously using Celery",
        )

        restore = subparsers.add_parser("restore", help="Restore or verify a backup")
        restore.add_argument("backup_id", type=str)
        restore.add_argument(
            "target_store",
            nargs="?",
            default=None,
            help="Database name or postgresql:// URL (defaults to the configured database)",
        )
        restore.add_argument(
            "--drop-existing",
            action="store_true",
            help="Drop existing objects before restoring",
        )
        restore.add_argument(
            "--verify-only",
            action="store_true",
            help="Only verify checksums and decryption; do not touch any database",
        )

        subparsers.add_parser("list", help="List recent backups")
        subparsers.add_parser("stats", help="Show backup statistics")

        delete = subparsers.add_parser("delete", help="Delete a backup and its artifact")
        delete.add_argument("backup_id", type=str)

        prune = subparsers.add_parser("prune", help="Delete completed backups past retention")
        prune.add_argument("--days", type=int, default=None, help="Retention window in days")

        subparsers.add_parser("test", help="Run the encryption self-test")

    def handle(self, *args, **options):
        action = options["action"]
        handler = getattr(self, f"handle_{action}")

        try:
            handler(options)
        except BackupError as e:
            raise CommandError(f"Backup {action} failed: {e}")

    def handle_create(self, options):
        reason = options.get("reason")

        if options.get("run_async"):
            task = create_backup_task.delay(trigger=BackupRecord.MANUAL, reason=reason)
            self.stdout.write(self.style.SUCCESS(f"Backup task queued: {task.id}"))
            return

        self.stdout.write("Creating manual backup...")
        record = get_backup_service().create(trigger=BackupRecord.MANUAL, reason=reason)
        self.stdout.write(
            self.style.SUCCESS(
                f"Backup completed: {record.backup_id} "
                f"({record.get_size_mb()} MB, checksum {record.checksum})"
            )
        )

    def handle_restore(self, options):
        backup_id = options["backup_id"]
        verify_only = options["verify_only"]

        if verify_only:
            self.stdout.write(f"Verifying backup {backup_id}...")
        else:
            target = options.get("target_store") or "the configured database"
            self.stdout.write(
                self.style.WARNING(f"Restoring backup {backup_id} into {target}...")
            )

        get_backup_service().restore(
            backup_id,
            target_store=options.get("target_store"),
            drop_existing=options["drop_existing"],
            verify_only=verify_only,
        )

        if verify_only:
            self.stdout.write(self.style.SUCCESS(f"Backup {backup_id} verified"))
        else:
            self.stdout.write(self.style.SUCCESS(f"Backup {backup_id} restored"))

    def handle_list(self, options):
        records = get_backup_service().list_backups()
        if not records:
            self.stdout.write("No backups found")
            return

        for record in records:
            line = (
                f"{record.backup_id}  {record.backup_type:<9}  {record.status:<9}  "
                f"{record.get_size_mb():>10} MB  {record.timestamp:%Y-%m-%d %H:%M:%S}"
            )
            if record.is_failed():
                self.stdout.write(self.style.ERROR(f"{line}  {record.error}"))
            else:
                self.stdout.write(line)

    def handle_stats(self, options):
        stats = get_backup_service().get_statistics()
        self.stdout.write(json.dumps(stats, indent=2, default=str))

    def handle_delete(self, options):
        get_backup_service().delete(options["backup_id"])
        self.stdout.write(self.style.SUCCESS(f"Backup {options['backup_id']} deleted"))

    def handle_prune(self, options):
        service = get_backup_service()
        recovered = service.fail_stale_records()
        if recovered:
            self.stdout.write(self.style.WARNING(f"Marked {recovered} abandoned backup(s) as failed"))
        deleted = RetentionManager(service).prune_older_than(options.get("days"))
        self.stdout.write(self.style.SUCCESS(f"Pruned {deleted} backup(s)"))

    def handle_test(self, options):
        result = get_backup_service().test_backup()
        if not result["success"]:
            raise CommandError(result["message"])
        self.stdout.write(self.style.SUCCESS(result["message"]))
