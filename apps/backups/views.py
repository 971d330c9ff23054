"""
Views for backup management.

A staff-only JSON API. Listing, statistics, detail, delete and the
encryption self-test run inline; backups and restores are enqueued as
Celery tasks and answered with 202 and the task id so request threads
never block on pg_dump or pg_restore.
"""

import logging

from rest_framework import permissions, status
from rest_framework.decorators import api_view, permission_classes
from rest_framework.response import Response

from .exceptions import (
    BackupError,
    ConcurrencyError,
    ConfigurationError,
    InvalidStateError,
    NotFoundError,
)
from .models import BackupRecord
from .serializers import (
    AutomaticBackupSerializer,
    BackupRecordSerializer,
    ManualBackupSerializer,
    RestoreRequestSerializer,
)
from .services import get_backup_service
from .tasks import create_backup_task, restore_backup_task

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    NotFoundError: status.HTTP_404_NOT_FOUND,
    InvalidStateError: status.HTTP_400_BAD_REQUEST,
    ConcurrencyError: status.HTTP_409_CONFLICT,
    ConfigurationError: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def _error_response(exc: BackupError) -> Response:
    for error_class, http_status in ERROR_STATUS.items():
        if isinstance(exc, error_class):
            return Response({"error": str(exc)}, status=http_status)
    logger.error(f"Backup API request failed: {exc}")
    return Response({"error": str(exc)}, status=status.HTTP_500_INTERNAL_SERVER_ERROR)


def _busy_response() -> Response:
    return Response(
        {"error": "Another backup or restore is already running"},
        status=status.HTTP_409_CONFLICT,
    )


def _user_id(request):
    return request.user.pk if request.user.is_authenticated else None


@api_view(["GET"])
@permission_classes([permissions.IsAdminUser])
def backup_list(request):
    """List the most recent backups, newest first."""
    try:
        records = get_backup_service().list_backups()
    except BackupError as e:
        return _error_response(e)
    return Response(BackupRecordSerializer(records, many=True).data)


@api_view(["GET"])
@permission_classes([permissions.IsAdminUser])
def backup_stats(request):
    try:
        stats = get_backup_service().get_statistics()
    except BackupError as e:
        return _error_response(e)
    return Response(stats)


@api_view(["GET", "DELETE"])
@permission_classes([permissions.IsAdminUser])
def backup_detail(request, backup_id):
    """Get or delete a single backup."""
    try:
        service = get_backup_service()
        if request.method == "DELETE":
            service.delete(backup_id, user=request.user)
            logger.info(f"Backup {backup_id} deleted by {request.user.username}")
            return Response(status=status.HTTP_204_NO_CONTENT)

        record = service.get(backup_id)
    except BackupError as e:
        return _error_response(e)

    return Response(BackupRecordSerializer(record).data)


def _enqueue_backup(request, trigger, reason):
    try:
        if get_backup_service().is_busy():
            return _busy_response()
    except BackupError as e:
        return _error_response(e)

    result = create_backup_task.delay(trigger=trigger, reason=reason, user_id=_user_id(request))
    logger.info(f"{trigger.capitalize()} backup enqueued by {request.user.username}: {result.id}")
    return Response(
        {"task_id": result.id, "status": "queued", "backup_type": trigger},
        status=status.HTTP_202_ACCEPTED,
    )


@api_view(["POST"])
@permission_classes([permissions.IsAdminUser])
def manual_backup(request):
    serializer = ManualBackupSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)
    return _enqueue_backup(request, BackupRecord.MANUAL, serializer.validated_data.get("reason"))


@api_view(["POST"])
@permission_classes([permissions.IsAdminUser])
def automatic_backup(request):
    """Enqueue an event-triggered backup; the request must carry a reason."""
    serializer = AutomaticBackupSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)
    return _enqueue_backup(request, BackupRecord.AUTOMATIC, serializer.validated_data["reason"])


@api_view(["POST"])
@permission_classes([permissions.IsAdminUser])
def restore_backup(request):
    """
    Enqueue a restore (or a verification) of a completed backup.

    The backup is looked up first so unknown or unfinished backups are
    rejected before anything is queued.
    """
    serializer = RestoreRequestSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)
    data = serializer.validated_data

    try:
        service = get_backup_service()
        record = service.get(data["backup_id"])
        if not record.is_completed():
            raise InvalidStateError(
                f"Backup is not ready for restore: {record.backup_id} (status: {record.status})"
            )
        # Verification does not take the execution slot
        if not data["verify_only"] and service.is_busy():
            return _busy_response()
    except BackupError as e:
        return _error_response(e)

    result = restore_backup_task.delay(
        backup_id=data["backup_id"],
        target_store=data.get("target_store"),
        drop_existing=data["drop_existing"],
        verify_only=data["verify_only"],
        user_id=_user_id(request),
    )
    logger.info(
        f"{'Verification' if data['verify_only'] else 'Restore'} of backup {data['backup_id']} "
        f"enqueued by {request.user.username}: {result.id}"
    )
    return Response(
        {"task_id": result.id, "status": "queued", "backup_id": data["backup_id"]},
        status=status.HTTP_202_ACCEPTED,
    )


@api_view(["POST"])
@permission_classes([permissions.IsAdminUser])
def test_backup(request):
    """Run the encryption self-test inline; it touches no database."""
    try:
        result = get_backup_service().test_backup()
    except BackupError as e:
        return _error_response(e)
    http_status = status.HTTP_200_OK if result["success"] else status.HTTP_500_INTERNAL_SERVER_ERROR
    return Response(result, status=http_status)
