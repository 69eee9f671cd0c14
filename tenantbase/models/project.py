"""
Registry models: project metadata, port ledger and audit log.

These tables live in the registry database, never in a tenant database.
"""

from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base

# Separate Base for registry models
RegistryBase = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProjectRecord(RegistryBase):
    """
    One row per project. Deleted projects keep a tombstone row
    (status='deleted') so their database name is never handed out again.
    """

    __tablename__ = "projects"

    id = Column(String(36), primary_key=True)
    name = Column(String(100), nullable=False)
    description = Column(Text, default="", nullable=False)

    # Tenant identity, fixed at creation
    database_name = Column(String(63), unique=True, nullable=False)
    role_name = Column(String(63), unique=True, nullable=False)

    # AES-256-GCM ciphertext (iv:authTag:ciphertext)
    encrypted_secret = Column(Text, nullable=False)

    database_host = Column(String(255), nullable=False)
    database_port = Column(Integer, nullable=False)

    owner_id = Column(String(100), default="system", nullable=False, index=True)
    tags = Column(JSON, default=list, nullable=False)
    # development, staging, production
    environment = Column(String(20), default="development", nullable=False)

    # active, running, stopped, delete_pending, deleted
    status = Column(String(20), default="active", nullable=False)

    ports = Column(JSON, default=dict, nullable=False)
    table_count = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)
    last_accessed = Column(DateTime(timezone=True))


class PortUsage(RegistryBase):
    """Port ledger entry."""

    __tablename__ = "port_usage"
    __table_args__ = (UniqueConstraint("service_type", "port", name="uq_port_usage_service_port"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    port = Column(Integer, nullable=False)
    service_type = Column(String(20), nullable=False)
    project_id = Column(String(36), nullable=False, index=True)
    status = Column(String(20), default="active", nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class ProjectLog(RegistryBase):
    """Audit log entry. Kept after the project itself is deleted."""

    __tablename__ = "project_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    project_id = Column(String(36), nullable=False, index=True)
    action = Column(String(20), nullable=False)  # CREATE, START, STOP, DELETE, UPDATE
    status = Column(String(20), nullable=False)  # SUCCESS, ERROR
    message = Column(Text, default="", nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)
