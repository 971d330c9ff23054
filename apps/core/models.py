"""
Core models for the POS platform.
"""

# Import audit models to register them with Django
from apps.core.audit_models import AuditLog  # noqa: F401
