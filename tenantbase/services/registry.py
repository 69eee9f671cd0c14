"""
Project registry, audit log and port ledger.

The abstract bases are what the orchestrator and port allocator depend
on; the Sql* classes persist through the registry database.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError

from tenantbase.database import RegistryDatabase
from tenantbase.models import PortUsage, ProjectLog, ProjectRecord
from tenantbase.schemas.project import AuditEntry, PortAssignment, Project, ProjectStatus


class PortAlreadyReservedError(Exception):
    """The ledger already holds an active reservation for (service_type, port)."""


# ---------------------------------------------------------
# Interfaces
# ---------------------------------------------------------


class ProjectRegistry(ABC):
    @abstractmethod
    async def create(self, project: Project) -> Project: ...

    @abstractmethod
    async def find(self, project_id: str) -> Optional[Project]:
        """Live (non-deleted) project by id."""

    @abstractmethod
    async def find_by_database_name(self, database_name: str) -> Optional[Project]:
        """Any project ever created with this database name, tombstones included."""

    @abstractmethod
    async def update(self, project_id: str, **changes: Any) -> Optional[Project]: ...

    @abstractmethod
    async def delete(self, project_id: str) -> bool: ...

    @abstractmethod
    async def list(
        self,
        status: Optional[ProjectStatus] = None,
        owner_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Project]:
        """Newest first. Tombstones only when status=DELETED is asked for."""


class AuditLog(ABC):
    @abstractmethod
    async def append(self, project_id: str, action: str, status: str, message: str) -> None: ...

    @abstractmethod
    async def list(
        self, project_id: str, limit: int = 50, action: Optional[str] = None
    ) -> List[AuditEntry]: ...

    @abstractmethod
    async def action_counts(self, since: Optional[datetime] = None) -> Dict[str, int]:
        """Number of records per action, optionally only those at or after since."""


class PortLedger(ABC):
    @abstractmethod
    async def reserved(self, service_type: str) -> Set[int]: ...

    @abstractmethod
    async def reserve(self, assignment: PortAssignment) -> None:
        """Persist a reservation; PortAlreadyReservedError if the port is held."""

    @abstractmethod
    async def release_port(self, service_type: str, port: int) -> None: ...

    @abstractmethod
    async def release_project(self, project_id: str) -> List[PortAssignment]: ...

    @abstractmethod
    async def all(self) -> List[PortAssignment]: ...

    @abstractmethod
    async def for_project(self, project_id: str) -> List[PortAssignment]: ...


# ---------------------------------------------------------
# SQLAlchemy implementations
# ---------------------------------------------------------


class SqlProjectRegistry(ProjectRegistry):
    def __init__(self, db: RegistryDatabase):
        self._db = db

    async def create(self, project: Project) -> Project:
        async with self._db.session() as session:
            record = ProjectRecord(**project.model_dump(mode="python"))
            record.status = project.status.value
            record.environment = project.environment.value
            session.add(record)
        return project

    async def find(self, project_id: str) -> Optional[Project]:
        async with self._db.session() as session:
            record = await session.get(ProjectRecord, project_id)
            if record is None or record.status == ProjectStatus.DELETED.value:
                return None
            return Project.model_validate(record)

    async def find_by_database_name(self, database_name: str) -> Optional[Project]:
        async with self._db.session() as session:
            result = await session.execute(
                select(ProjectRecord).where(ProjectRecord.database_name == database_name)
            )
            record = result.scalar_one_or_none()
            return Project.model_validate(record) if record else None

    async def update(self, project_id: str, **changes: Any) -> Optional[Project]:
        async with self._db.session() as session:
            record = await session.get(ProjectRecord, project_id)
            if record is None or record.status == ProjectStatus.DELETED.value:
                return None
            for field, value in changes.items():
                if isinstance(value, Enum):
                    value = value.value
                setattr(record, field, value)
            await session.flush()
            await session.refresh(record)
            return Project.model_validate(record)

    async def delete(self, project_id: str) -> bool:
        async with self._db.session() as session:
            record = await session.get(ProjectRecord, project_id)
            if record is None or record.status == ProjectStatus.DELETED.value:
                return False
            record.status = ProjectStatus.DELETED.value
            record.ports = {}
            return True

    async def list(
        self,
        status: Optional[ProjectStatus] = None,
        owner_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Project]:
        async with self._db.session() as session:
            query = select(ProjectRecord)
            if status is not None:
                query = query.where(ProjectRecord.status == status.value)
            else:
                query = query.where(ProjectRecord.status != ProjectStatus.DELETED.value)
            if owner_id is not None:
                query = query.where(ProjectRecord.owner_id == owner_id)
            query = query.order_by(ProjectRecord.created_at.desc())
            if limit is not None:
                query = query.limit(limit)
            result = await session.execute(query)
            return [Project.model_validate(r) for r in result.scalars().all()]


class SqlAuditLog(AuditLog):
    def __init__(self, db: RegistryDatabase):
        self._db = db

    async def append(self, project_id: str, action: str, status: str, message: str) -> None:
        async with self._db.session() as session:
            session.add(ProjectLog(project_id=project_id, action=action, status=status, message=message))

    async def list(
        self, project_id: str, limit: int = 50, action: Optional[str] = None
    ) -> List[AuditEntry]:
        async with self._db.session() as session:
            query = select(ProjectLog).where(ProjectLog.project_id == project_id)
            if action is not None:
                query = query.where(ProjectLog.action == action)
            result = await session.execute(
                query.order_by(ProjectLog.created_at.desc(), ProjectLog.id.desc()).limit(limit)
            )
            return [AuditEntry.model_validate(log) for log in result.scalars().all()]

    async def action_counts(self, since: Optional[datetime] = None) -> Dict[str, int]:
        async with self._db.session() as session:
            query = select(ProjectLog.action, func.count(ProjectLog.id)).group_by(ProjectLog.action)
            if since is not None:
                query = query.where(ProjectLog.created_at >= since)
            result = await session.execute(query)
            return {action: count for action, count in result.all()}


class SqlPortLedger(PortLedger):
    def __init__(self, db: RegistryDatabase):
        self._db = db

    async def reserved(self, service_type: str) -> Set[int]:
        async with self._db.session() as session:
            result = await session.execute(
                select(PortUsage.port).where(PortUsage.service_type == service_type)
            )
            return set(result.scalars().all())

    async def reserve(self, assignment: PortAssignment) -> None:
        try:
            async with self._db.session() as session:
                session.add(PortUsage(**assignment.model_dump()))
        except IntegrityError as e:
            raise PortAlreadyReservedError(
                f"{assignment.service_type}:{assignment.port} is already reserved"
            ) from e

    async def release_port(self, service_type: str, port: int) -> None:
        async with self._db.session() as session:
            await session.execute(
                delete(PortUsage).where(
                    PortUsage.service_type == service_type, PortUsage.port == port
                )
            )

    async def release_project(self, project_id: str) -> List[PortAssignment]:
        async with self._db.session() as session:
            result = await session.execute(
                select(PortUsage).where(PortUsage.project_id == project_id)
            )
            released = [PortAssignment.model_validate(p) for p in result.scalars().all()]
            await session.execute(delete(PortUsage).where(PortUsage.project_id == project_id))
            return released

    async def all(self) -> List[PortAssignment]:
        async with self._db.session() as session:
            result = await session.execute(
                select(PortUsage).order_by(PortUsage.service_type, PortUsage.port)
            )
            return [PortAssignment.model_validate(p) for p in result.scalars().all()]

    async def for_project(self, project_id: str) -> List[PortAssignment]:
        async with self._db.session() as session:
            result = await session.execute(
                select(PortUsage).where(PortUsage.project_id == project_id).order_by(PortUsage.port)
            )
            return [PortAssignment.model_validate(p) for p in result.scalars().all()]
