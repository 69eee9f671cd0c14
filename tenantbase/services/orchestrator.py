"""
Tenant lifecycle orchestration.

Creates, starts, stops and deletes projects. Owns the compensation logic
for partial failures and writes an audit record for every transition,
successful or not.
"""

import logging
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

from tenantbase.config import Settings, get_settings
from tenantbase.exceptions import (
    InvalidTransitionError,
    PartialProvisioningError,
    PartialTeardownError,
    TenantAlreadyExistsError,
    TenantNotFoundError,
    UnauthorizedError,
)
from tenantbase.locks import KeyedLock
from tenantbase.schemas.project import (
    ALLOWED_TRANSITIONS,
    AuditEntry,
    PortAssignment,
    DEFAULT_OWNER,
    PortUsageStats,
    Project,
    ProjectEnvironment,
    ProjectHealth,
    ProjectOverview,
    ProjectStatus,
    TenantCredential,
)
from tenantbase.services.credentials import derive_identity
from tenantbase.services.encryption import decrypt, encrypt
from tenantbase.services.port_allocator import PortAllocator
from tenantbase.services.registry import AuditLog, ProjectRegistry
from tenantbase.services.stack_runner import StackRunner
from tenantbase.services.tenant_manager import ConnectionPoolRegistry
from tenantbase.services.tenant_provisioner import ProvisioningService

logger = logging.getLogger(__name__)

SUCCESS = "SUCCESS"
ERROR = "ERROR"


def _now() -> datetime:
    return datetime.now(timezone.utc)


class TenantLifecycleOrchestrator:
    """
    Top-level project lifecycle.

    Two lifecycle operations on the same project id never overlap, and
    creation is serialized per derived database name.
    """

    def __init__(
        self,
        registry: ProjectRegistry,
        audit: AuditLog,
        ports: PortAllocator,
        provisioner: ProvisioningService,
        pools: ConnectionPoolRegistry,
        runner: StackRunner,
        settings: Optional[Settings] = None,
    ):
        self.registry = registry
        self.audit = audit
        self.ports = ports
        self.provisioner = provisioner
        self.pools = pools
        self.runner = runner
        self._settings = settings or get_settings()
        self._project_locks = KeyedLock()
        self._name_locks = KeyedLock()

    async def _log(self, project_id: str, action: str, status: str, message: str) -> None:
        try:
            await self.audit.append(project_id, action, status, message)
        except Exception:
            logger.exception("Failed to write audit record %s/%s for %s", action, status, project_id)

    async def _require(self, project_id: str) -> Project:
        project = await self.registry.find(project_id)
        if project is None:
            raise TenantNotFoundError(project_id)
        return project

    @staticmethod
    def _check_transition(project: Project, target: ProjectStatus) -> None:
        if project.status not in ALLOWED_TRANSITIONS[target]:
            raise InvalidTransitionError(project.id, project.status.value, target.value)

    # ---------------------------------------------------------
    # Create
    # ---------------------------------------------------------

    async def create_project(
        self,
        name: str,
        description: str = "",
        owner_id: str = DEFAULT_OWNER,
        tags: Optional[List[str]] = None,
        environment: ProjectEnvironment = ProjectEnvironment.DEVELOPMENT,
    ) -> Tuple[Project, TenantCredential]:
        """
        Create a project: identity, ports, tenant database, registry record.

        On failure everything created so far is compensated and the
        original error is raised.
        """
        identity = derive_identity(name)

        async with self._name_locks.hold(identity.database_name):
            previous = await self.registry.find_by_database_name(identity.database_name)
            if previous is not None:
                raise TenantAlreadyExistsError(
                    identity.database_name,
                    detail="database names are never reused, even after deletion",
                )

            project_id = str(uuid.uuid4())
            logger.info("Creating project %s (%s)", name, project_id)

            ports: Dict[str, int] = {}
            credential: Optional[TenantCredential] = None
            try:
                ports = await self.ports.allocate_all(project_id)
                credential = await self.provisioner.create_tenant(
                    identity.database_name, identity.role_name
                )

                now = _now()
                project = Project(
                    id=project_id,
                    name=name,
                    description=description,
                    database_name=identity.database_name,
                    role_name=identity.role_name,
                    encrypted_secret=encrypt(credential.password.get_secret_value(), self._settings),
                    database_host=credential.host,
                    database_port=credential.port,
                    owner_id=owner_id,
                    tags=list(tags or []),
                    environment=environment,
                    status=ProjectStatus.ACTIVE,
                    ports=ports,
                    created_at=now,
                    updated_at=now,
                    last_accessed=now,
                )
                await self.registry.create(project)

            except Exception as e:
                await self._compensate_create(project_id, identity.role_name, e, credential)
                await self._log(project_id, "CREATE", ERROR, str(e))
                raise

        await self._log(project_id, "CREATE", SUCCESS, f"Project created: {name}")
        logger.info("Project created: %s (%s)", name, project_id)
        return project, credential

    async def _compensate_create(
        self,
        project_id: str,
        role_name: str,
        error: Exception,
        credential: Optional[TenantCredential],
    ) -> None:
        if isinstance(error, PartialProvisioningError):
            await self.provisioner.rollback(error, role_name)
        elif credential is not None:
            # Tenant fully provisioned but the registry write failed
            try:
                await self.provisioner.drop_tenant(credential.database, role_name)
            except Exception:
                logger.exception("Cleanup of tenant %s failed", credential.database)

        try:
            await self.ports.release(project_id)
        except Exception:
            logger.exception("Releasing ports of failed project %s failed", project_id)

    # ---------------------------------------------------------
    # Start / stop
    # ---------------------------------------------------------

    async def start_project(self, project_id: str) -> Project:
        return await self._run_stack(project_id, "START", ProjectStatus.RUNNING)

    async def stop_project(self, project_id: str) -> Project:
        return await self._run_stack(project_id, "STOP", ProjectStatus.STOPPED)

    async def _run_stack(self, project_id: str, action: str, target: ProjectStatus) -> Project:
        async with self._project_locks.hold(project_id):
            try:
                project = await self._require(project_id)
                self._check_transition(project, target)

                if target is ProjectStatus.RUNNING:
                    await self.runner.start(project.database_name)
                else:
                    await self.runner.stop(project.database_name)

                project = await self.registry.update(project_id, status=target, updated_at=_now())
            except Exception as e:
                await self._log(project_id, action, ERROR, str(e))
                raise

        await self._log(project_id, action, SUCCESS, f"Project {target.value}")
        logger.info("Project %s is now %s", project_id, target.value)
        return project

    # ---------------------------------------------------------
    # Delete
    # ---------------------------------------------------------

    async def delete_project(self, project_id: str) -> None:
        """
        Drop the tenant, release its ports, then remove the project record.

        A teardown failure leaves the project in delete_pending and raises
        PartialTeardownError; calling delete again retries.
        """
        async with self._project_locks.hold(project_id):
            try:
                project = await self._require(project_id)
                self._check_transition(project, ProjectStatus.DELETED)
                logger.info("Deleting project %s (%s)", project.name, project_id)

                try:
                    await self.pools.close_pool(project.database_name, project.role_name)
                    await self.provisioner.drop_tenant(project.database_name, project.role_name)
                except Exception as e:
                    await self.registry.update(
                        project_id, status=ProjectStatus.DELETE_PENDING, updated_at=_now()
                    )
                    if isinstance(e, PartialTeardownError):
                        raise
                    raise PartialTeardownError(project.database_name, "drop_tenant", [], e) from e

                await self.ports.release(project_id)
                await self.registry.delete(project_id)
            except Exception as e:
                await self._log(project_id, "DELETE", ERROR, str(e))
                raise

        await self._log(project_id, "DELETE", SUCCESS, f"Project deleted: {project.name}")
        logger.info("Project deleted: %s (%s)", project.name, project_id)

    # ---------------------------------------------------------
    # Queries and small updates
    # ---------------------------------------------------------

    async def get_project(self, project_id: str) -> Project:
        return await self._require(project_id)

    async def list_projects(
        self,
        status: Optional[ProjectStatus] = None,
        owner_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Project]:
        return await self.registry.list(status, owner_id=owner_id, limit=limit)

    async def update_project(
        self,
        project_id: str,
        name: Optional[str] = None,
        description: Optional[str] = None,
        tags: Optional[List[str]] = None,
        environment: Optional[ProjectEnvironment] = None,
    ) -> Project:
        """Change project metadata. Database and role names stay as they are."""
        changes = {
            field: value
            for field, value in (
                ("name", name),
                ("description", description),
                ("tags", tags),
                ("environment", environment),
            )
            if value is not None
        }

        async with self._project_locks.hold(project_id):
            try:
                project = await self._require(project_id)
                if changes:
                    project = await self.registry.update(project_id, updated_at=_now(), **changes)
            except Exception as e:
                await self._log(project_id, "UPDATE", ERROR, str(e))
                raise

        await self._log(project_id, "UPDATE", SUCCESS, f"Updated: {', '.join(changes) or 'nothing'}")
        return project

    def get_credential(self, project: Project) -> TenantCredential:
        return TenantCredential(
            username=project.role_name,
            password=decrypt(project.encrypted_secret, self._settings),
            host=project.database_host,
            port=project.database_port,
            database=project.database_name,
        )

    def verify_access(self, project: Project, password: str) -> TenantCredential:
        """Check a caller-supplied database password in constant time."""
        credential = self.get_credential(project)
        if not secrets.compare_digest(
            credential.password.get_secret_value().encode(), password.encode()
        ):
            raise UnauthorizedError("Invalid database password")
        return credential

    async def touch(self, project_id: str) -> None:
        await self.registry.update(project_id, last_accessed=_now())

    async def refresh_table_count(self, project_id: str, table_count: int) -> None:
        await self.registry.update(project_id, table_count=table_count, last_accessed=_now())

    async def get_project_logs(
        self, project_id: str, limit: int = 50, action: Optional[str] = None
    ) -> List[AuditEntry]:
        return await self.audit.list(project_id, limit, action=action)

    async def get_overview(self) -> ProjectOverview:
        """Project counts by status, total audit records and actions in the last 24 hours."""
        projects = await self.registry.list()
        all_actions = await self.audit.action_counts()
        recent_actions = await self.audit.action_counts(since=_now() - timedelta(hours=24))
        return ProjectOverview(
            total_projects=len(projects),
            running_projects=sum(p.status == ProjectStatus.RUNNING for p in projects),
            stopped_projects=sum(p.status == ProjectStatus.STOPPED for p in projects),
            total_logs=sum(all_actions.values()),
            recent_actions=recent_actions,
        )

    async def check_health(self, project_id: str) -> ProjectHealth:
        """Ask the server whether the tenant database exists and accepts its role."""
        project = await self._require(project_id)
        status = await self.provisioner.check_tenant(self.get_credential(project))
        return ProjectHealth(
            project_id=project.id,
            status=project.status,
            pooled=self.pools.has_pool(project.database_name, project.role_name),
            **status,
        )

    async def get_usage_stats(self) -> Dict[str, PortUsageStats]:
        return await self.ports.get_usage_stats()

    async def list_used_ports(self) -> List[PortAssignment]:
        return await self.ports.list_used_ports()

    async def shutdown(self) -> None:
        """Close every tenant pool. Awaited by the host process before exit."""
        await self.pools.close_all()
