"""
Admin interface for backup records.

Records are written only by the backup service, so the admin is read-only.
Deletion and verification go through BackupService to keep the artifact
and the metadata row consistent.
"""

from django.contrib import admin, messages
from django.utils.html import format_html

from .exceptions import BackupError
from .models import BackupRecord
from .services import get_backup_service


@admin.register(BackupRecord)
class BackupRecordAdmin(admin.ModelAdmin):
    """Admin interface for BackupRecord model."""

    list_display = [
        "backup_id",
        "backup_type",
        "size_display",
        "status_badge",
        "timestamp",
        "duration_ms",
        "restored_at",
    ]
    list_filter = [
        "backup_type",
        "status",
        "timestamp",
    ]
    search_fields = [
        "backup_id",
        "checksum",
        "reason",
    ]
    readonly_fields = [field.name for field in BackupRecord._meta.concrete_fields]
    fieldsets = (
        (
            "Backup Information",
            {
                "fields": (
                    "backup_id",
                    "backup_type",
                    "status",
                    "reason",
                    "error",
                )
            },
        ),
        (
            "Artifact & Integrity",
            {
                "fields": (
                    "path",
                    "size_bytes",
                    "checksum",
                    "encrypted",
                    "compression_ratio",
                )
            },
        ),
        (
            "Timestamps",
            {
                "fields": (
                    "timestamp",
                    "started_at",
                    "completed_at",
                    "duration_ms",
                    "restored_at",
                    "restored_by",
                )
            },
        ),
        (
            "Additional Information",
            {
                "fields": (
                    "created_by",
                    "branch_id",
                    "database_version",
                    "schema_version",
                    "record_count",
                    "metadata",
                )
            },
        ),
    )
    date_hierarchy = "timestamp"
    ordering = ["-timestamp"]
    actions = ["verify_backups", "delete_backups"]

    def size_display(self, obj):
        """Display size in human-readable format."""
        if obj.size_bytes < 1024 * 1024:  # Less than 1 MB
            return f"{obj.size_bytes / 1024:.2f} KB"
        return f"{obj.get_size_mb()} MB"

    size_display.short_description = "Size"

    def status_badge(self, obj):
        """Display status as a colored badge."""
        colors = {
            BackupRecord.PENDING: "gray",
            BackupRecord.RUNNING: "blue",
            BackupRecord.COMPLETED: "green",
            BackupRecord.FAILED: "red",
        }
        color = colors.get(obj.status, "gray")
        return format_html(
            '<span style="background-color: {}; color: white; padding: 3px 10px; border-radius: 3px;">{}</span>',
            color,
            obj.get_status_display(),
        )

    status_badge.short_description = "Status"

    def get_actions(self, request):
        actions = super().get_actions(request)
        # The stock bulk delete would leave artifacts on disk
        actions.pop("delete_selected", None)
        return actions

    def verify_backups(self, request, queryset):
        """Verify checksums and decryption of the selected backups."""
        service = get_backup_service()
        verified = 0
        for record in queryset.filter(status=BackupRecord.COMPLETED):
            try:
                service.restore(record.backup_id, verify_only=True, user=request.user)
                verified += 1
            except BackupError as e:
                self.message_user(
                    request, f"Backup {record.backup_id} failed verification: {e}", messages.ERROR
                )
        self.message_user(request, f"{verified} backup(s) verified.")

    verify_backups.short_description = "Verify selected backups"

    def delete_backups(self, request, queryset):
        """Delete the selected backups and their artifacts."""
        service = get_backup_service()
        deleted = 0
        for record in queryset:
            try:
                service.delete(record.backup_id, user=request.user)
                deleted += 1
            except BackupError as e:
                self.message_user(
                    request, f"Could not delete backup {record.backup_id}: {e}", messages.ERROR
                )
        self.message_user(request, f"{deleted} backup(s) deleted.")

    delete_backups.short_description = "Delete selected backups and artifacts"

    def has_add_permission(self, request):
        """Backups are created by the backup service only."""
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        """Deletion goes through the delete_backups action."""
        return False
