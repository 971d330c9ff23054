"""
URL configuration for backup management.
"""

from django.urls import path

from . import views

app_name = "backups"

urlpatterns = [
    path("", views.backup_list, name="backup_list"),
    path("stats/", views.backup_stats, name="backup_stats"),
    path("manual/", views.manual_backup, name="manual_backup"),
    path("automatic/", views.automatic_backup, name="automatic_backup"),
    path("restore/", views.restore_backup, name="restore_backup"),
    path("test/", views.test_backup, name="test_backup"),
    path("<str:backup_id>/", views.backup_detail, name="backup_detail"),
]
