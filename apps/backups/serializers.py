"""
Serializers for the backup management API.
"""

from rest_framework import serializers

from .models import BackupRecord


class BackupRecordSerializer(serializers.ModelSerializer):
    """Read-only view of a backup record."""

    size_mb = serializers.SerializerMethodField()

    class Meta:
        model = BackupRecord
        fields = [
            "backup_id",
            "timestamp",
            "backup_type",
            "status",
            "size_bytes",
            "size_mb",
            "checksum",
            "encrypted",
            "duration_ms",
            "error",
            "path",
            "reason",
            "compression_ratio",
            "started_at",
            "completed_at",
            "restored_at",
            "restored_by",
            "created_by",
            "metadata",
        ]
        read_only_fields = fields

    def get_size_mb(self, obj):
        return obj.get_size_mb()


class ManualBackupSerializer(serializers.Serializer):
    reason = serializers.CharField(required=False, allow_blank=True, max_length=500)


class AutomaticBackupSerializer(serializers.Serializer):
    """Event-triggered backups must say what triggered them."""

    reason = serializers.CharField(max_length=500)


class RestoreRequestSerializer(serializers.Serializer):
    backup_id = serializers.CharField(max_length=64)
    target_store = serializers.CharField(required=False, allow_blank=True, max_length=500)
    drop_existing = serializers.BooleanField(default=False)
    verify_only = serializers.BooleanField(default=False)

    def validate_target_store(self, value):
        if value and "://" in value and not value.startswith(("postgres://", "postgresql://")):
            raise serializers.ValidationError("Only postgresql:// URLs are supported.")
        return value or None
