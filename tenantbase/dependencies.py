"""
Service container and FastAPI dependencies.

All shared state (registry engine, port lock, pool cache, keyed locks)
lives on one Services object built at startup and stored on app.state.
Routes reach it through the dependencies below.

Example:
    @router.get("/projects")
    async def list_projects(services: Services = Depends(get_services)):
        ...
"""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, Request

from tenantbase.config import Settings, get_settings
from tenantbase.database import RegistryDatabase
from tenantbase.exceptions import UnauthorizedError
from tenantbase.schemas.project import Project, TenantCredential
from tenantbase.services.orchestrator import TenantLifecycleOrchestrator
from tenantbase.services.port_allocator import PortAllocator
from tenantbase.services.query_gateway import QueryGateway
from tenantbase.services.registry import SqlAuditLog, SqlPortLedger, SqlProjectRegistry
from tenantbase.services.stack_runner import StackRunner
from tenantbase.services.tenant_manager import ConnectionPoolRegistry
from tenantbase.services.tenant_provisioner import ProvisioningService


@dataclass
class Services:
    settings: Settings
    database: Optional[RegistryDatabase]
    orchestrator: TenantLifecycleOrchestrator
    gateway: QueryGateway

    @property
    def pools(self) -> ConnectionPoolRegistry:
        return self.orchestrator.pools

    async def startup(self) -> None:
        if self.database is not None:
            await self.database.init_db()
        self.pools.start_cleanup_task()

    async def shutdown(self) -> None:
        try:
            await self.orchestrator.shutdown()
        finally:
            if self.database is not None:
                await self.database.close()


def build_services(settings: Optional[Settings] = None) -> Services:
    """Wire the production services against the registry database."""
    settings = settings or get_settings()
    database = RegistryDatabase(settings)

    pools = ConnectionPoolRegistry(settings)
    orchestrator = TenantLifecycleOrchestrator(
        registry=SqlProjectRegistry(database),
        audit=SqlAuditLog(database),
        ports=PortAllocator(
            SqlPortLedger(database),
            settings.port_ranges,
            probe_host=settings.port_probe_host,
        ),
        provisioner=ProvisioningService(settings),
        pools=pools,
        runner=StackRunner(settings),
        settings=settings,
    )
    return Services(
        settings=settings,
        database=database,
        orchestrator=orchestrator,
        gateway=QueryGateway(pools),
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_orchestrator(services: Services = Depends(get_services)) -> TenantLifecycleOrchestrator:
    return services.orchestrator


def get_gateway(services: Services = Depends(get_services)) -> QueryGateway:
    return services.gateway


async def get_project(
    project_id: str,
    orchestrator: TenantLifecycleOrchestrator = Depends(get_orchestrator),
) -> Project:
    """Path dependency: the live project named by {project_id}, or 404."""
    return await orchestrator.get_project(project_id)


async def get_tenant_credential(
    project: Project = Depends(get_project),
    x_database_password: Optional[str] = Header(None),
    orchestrator: TenantLifecycleOrchestrator = Depends(get_orchestrator),
) -> TenantCredential:
    """
    Check the X-Database-Password header against the project's secret.

    Raises UnauthorizedError (401) on mismatch.
    """
    if not x_database_password:
        raise UnauthorizedError("X-Database-Password header required")
    credential = orchestrator.verify_access(project, x_database_password)
    await orchestrator.touch(project.id)
    return credential
