"""
Django admin configuration for core models.
"""

from django.contrib import admin

from apps.core.audit_models import AuditLog


@admin.register(AuditLog)
class AuditLogAdmin(admin.ModelAdmin):
    """Admin interface for audit logs."""

    list_display = [
        "timestamp",
        "category",
        "action",
        "severity",
        "actor",
        "object_id",
        "description_short",
    ]

    list_filter = [
        "category",
        "action",
        "severity",
        "timestamp",
    ]

    search_fields = [
        "actor",
        "user__username",
        "description",
        "object_id",
    ]

    readonly_fields = [
        "id",
        "user",
        "actor",
        "category",
        "action",
        "severity",
        "description",
        "object_id",
        "metadata",
        "timestamp",
    ]

    fieldsets = (
        (
            "Action Details",
            {
                "fields": (
                    "id",
                    "timestamp",
                    "category",
                    "action",
                    "severity",
                    "description",
                )
            },
        ),
        (
            "Actor & Object",
            {
                "fields": (
                    "user",
                    "actor",
                    "object_id",
                )
            },
        ),
        (
            "Additional Metadata",
            {
                "fields": ("metadata",),
                "classes": ("collapse",),
            },
        ),
    )

    ordering = ["-timestamp"]

    def description_short(self, obj):
        if len(obj.description) > 80:
            return f"{obj.description[:77]}..."
        return obj.description

    description_short.short_description = "Description"

    def has_add_permission(self, request):
        """Audit logs cannot be manually added."""
        return False

    def has_change_permission(self, request, obj=None):
        """Audit logs cannot be modified."""
        return False
