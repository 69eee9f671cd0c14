"""
Project lifecycle routes.

Create, list, edit, start, stop, check and delete projects, plus the
port ledger views and an overview.
"""

from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, Query

from tenantbase.dependencies import get_orchestrator
from tenantbase.schemas.project import (
    AuditEntry,
    PortAssignment,
    PortUsageStats,
    ProjectCreate,
    ProjectCreateResponse,
    ProjectHealth,
    ProjectOverview,
    ProjectResponse,
    ProjectStatus,
    ProjectUpdate,
)
from tenantbase.services.orchestrator import TenantLifecycleOrchestrator

router = APIRouter()


# ---------------------------------------------------------
# Projects
# ---------------------------------------------------------


@router.post("/projects", status_code=201, response_model=ProjectCreateResponse)
async def create_project(
    data: ProjectCreate,
    orchestrator: TenantLifecycleOrchestrator = Depends(get_orchestrator),
):
    """
    Create a project with its own database, role and port set.

    The database password is returned here and nowhere else.
    """
    project, credential = await orchestrator.create_project(
        data.name,
        data.description,
        owner_id=data.owner_id,
        tags=data.tags,
        environment=data.environment,
    )
    return ProjectCreateResponse(
        project=ProjectResponse.from_project(project),
        database_password=credential.password.get_secret_value(),
        connection_string=credential.connection_string,
    )


@router.get("/projects", response_model=List[ProjectResponse])
async def list_projects(
    status: Optional[ProjectStatus] = None,
    owner_id: Optional[str] = Query(None, min_length=1, max_length=100),
    limit: int = Query(50, ge=1, le=100),
    orchestrator: TenantLifecycleOrchestrator = Depends(get_orchestrator),
):
    """List projects, newest first."""
    projects = await orchestrator.list_projects(status, owner_id=owner_id, limit=limit)
    return [ProjectResponse.from_project(p) for p in projects]


@router.get("/projects/stats/overview", response_model=ProjectOverview)
async def get_overview(
    orchestrator: TenantLifecycleOrchestrator = Depends(get_orchestrator),
):
    """Project counts and audit activity over the last 24 hours."""
    return await orchestrator.get_overview()


@router.get("/projects/{project_id}", response_model=ProjectResponse)
async def get_project(
    project_id: str,
    orchestrator: TenantLifecycleOrchestrator = Depends(get_orchestrator),
):
    project = await orchestrator.get_project(project_id)
    return ProjectResponse.from_project(project)


@router.patch("/projects/{project_id}", response_model=ProjectResponse)
async def update_project(
    project_id: str,
    data: ProjectUpdate,
    orchestrator: TenantLifecycleOrchestrator = Depends(get_orchestrator),
):
    """Rename a project or change its description, tags or environment."""
    project = await orchestrator.update_project(
        project_id,
        name=data.name,
        description=data.description,
        tags=data.tags,
        environment=data.environment,
    )
    return ProjectResponse.from_project(project)


@router.post("/projects/{project_id}/start", response_model=ProjectResponse)
async def start_project(
    project_id: str,
    orchestrator: TenantLifecycleOrchestrator = Depends(get_orchestrator),
):
    project = await orchestrator.start_project(project_id)
    return ProjectResponse.from_project(project)


@router.post("/projects/{project_id}/stop", response_model=ProjectResponse)
async def stop_project(
    project_id: str,
    orchestrator: TenantLifecycleOrchestrator = Depends(get_orchestrator),
):
    project = await orchestrator.stop_project(project_id)
    return ProjectResponse.from_project(project)


@router.delete("/projects/{project_id}")
async def delete_project(
    project_id: str,
    orchestrator: TenantLifecycleOrchestrator = Depends(get_orchestrator),
):
    """
    Delete a project, its database and role, and release its ports.

    WARNING: this permanently deletes all tenant data.
    """
    await orchestrator.delete_project(project_id)
    return {"success": True, "message": f"Project {project_id} deleted"}


@router.get("/projects/{project_id}/logs", response_model=List[AuditEntry])
async def get_project_logs(
    project_id: str,
    limit: int = Query(50, ge=1, le=500),
    action: Optional[str] = Query(None, pattern=r"^[A-Z]+$"),
    orchestrator: TenantLifecycleOrchestrator = Depends(get_orchestrator),
):
    """Audit trail of a project, newest first. ?action=START narrows it to one action."""
    await orchestrator.get_project(project_id)
    return await orchestrator.get_project_logs(project_id, limit, action=action)


@router.get("/projects/{project_id}/health", response_model=ProjectHealth)
async def get_project_health(
    project_id: str,
    orchestrator: TenantLifecycleOrchestrator = Depends(get_orchestrator),
):
    """Check that the tenant database exists and its role can connect."""
    return await orchestrator.check_health(project_id)


# ---------------------------------------------------------
# Ports
# ---------------------------------------------------------


@router.get("/ports/stats", response_model=Dict[str, PortUsageStats])
async def get_port_stats(
    orchestrator: TenantLifecycleOrchestrator = Depends(get_orchestrator),
):
    """Usage per service type."""
    return await orchestrator.get_usage_stats()


@router.get("/ports", response_model=List[PortAssignment])
async def list_used_ports(
    orchestrator: TenantLifecycleOrchestrator = Depends(get_orchestrator),
):
    """Every active port reservation."""
    return await orchestrator.list_used_ports()
