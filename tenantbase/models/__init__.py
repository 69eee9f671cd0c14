"""
SQLAlchemy models for the registry database.
"""

from tenantbase.models.project import PortUsage, ProjectLog, ProjectRecord, RegistryBase

__all__ = [
    "RegistryBase",
    "ProjectRecord",
    "PortUsage",
    "ProjectLog",
]
