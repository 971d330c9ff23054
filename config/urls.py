"""
URL configuration for the POS platform.
"""

from django.contrib import admin
from django.urls import include, path

urlpatterns = [
    path("api/backups/", include("apps.backups.urls")),  # Backup management API
    path("admin/", admin.site.urls),
]
