"""
Schemas for projects, credentials, ports and audit records.
"""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, SecretStr


class ProjectStatus(str, Enum):
    ACTIVE = "active"
    RUNNING = "running"
    STOPPED = "stopped"
    DELETE_PENDING = "delete_pending"
    DELETED = "deleted"


class ProjectEnvironment(str, Enum):
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


# target status -> statuses it may be reached from
ALLOWED_TRANSITIONS: Dict[ProjectStatus, frozenset] = {
    ProjectStatus.RUNNING: frozenset({ProjectStatus.ACTIVE, ProjectStatus.STOPPED}),
    ProjectStatus.STOPPED: frozenset({ProjectStatus.RUNNING}),
    ProjectStatus.DELETE_PENDING: frozenset(
        {ProjectStatus.ACTIVE, ProjectStatus.STOPPED, ProjectStatus.DELETE_PENDING}
    ),
    ProjectStatus.DELETED: frozenset(
        {ProjectStatus.ACTIVE, ProjectStatus.STOPPED, ProjectStatus.DELETE_PENDING}
    ),
}


# ---------------------------------------------------------
# Tenant identity and credentials
# ---------------------------------------------------------


class TenantIdentity(BaseModel):
    """Database and role names derived from a project name."""

    database_name: str
    role_name: str


class TenantCredential(BaseModel):
    """Connection details for one tenant database. The password never renders."""

    model_config = ConfigDict(frozen=True)

    username: str
    password: SecretStr
    host: str
    port: int
    database: str

    @property
    def pool_key(self) -> tuple[str, str]:
        return (self.database, self.username)

    @property
    def connection_string(self) -> str:
        return (
            f"postgresql://{self.username}:{self.password.get_secret_value()}"
            f"@{self.host}:{self.port}/{self.database}"
        )


# ---------------------------------------------------------
# Project records
# ---------------------------------------------------------


DEFAULT_OWNER = "system"


class Project(BaseModel):
    """A project as held by the registry."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    description: str = ""
    database_name: str
    role_name: str
    encrypted_secret: str
    database_host: str
    database_port: int
    owner_id: str = DEFAULT_OWNER
    tags: List[str] = Field(default_factory=list)
    environment: ProjectEnvironment = ProjectEnvironment.DEVELOPMENT
    status: ProjectStatus = ProjectStatus.ACTIVE
    ports: Dict[str, int] = Field(default_factory=dict)
    table_count: int = 0
    created_at: datetime
    updated_at: datetime
    last_accessed: Optional[datetime] = None


class ProjectCreate(BaseModel):
    """Project creation request."""

    name: str = Field(min_length=1, max_length=100)
    description: str = Field("", max_length=500)
    owner_id: str = Field(DEFAULT_OWNER, min_length=1, max_length=100)
    tags: List[str] = Field(default_factory=list, max_length=20)
    environment: ProjectEnvironment = ProjectEnvironment.DEVELOPMENT


class ProjectUpdate(BaseModel):
    """Editable project metadata."""

    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    tags: Optional[List[str]] = Field(None, max_length=20)
    environment: Optional[ProjectEnvironment] = None


class ProjectResponse(BaseModel):
    """Project as returned by the API. Never includes the secret."""

    id: str
    name: str
    description: str
    database_name: str
    role_name: str
    database_host: str
    database_port: int
    status: ProjectStatus
    owner_id: str
    tags: List[str]
    environment: ProjectEnvironment
    ports: Dict[str, int]
    table_count: int
    created_at: datetime
    updated_at: datetime
    last_accessed: Optional[datetime] = None

    @classmethod
    def from_project(cls, project: Project) -> "ProjectResponse":
        return cls.model_validate(project.model_dump(exclude={"encrypted_secret"}))


class ProjectCreateResponse(BaseModel):
    """Response after creating a project; the only time the secret is shown."""

    project: ProjectResponse
    database_password: str
    connection_string: str


class ProjectHealth(BaseModel):
    """Server-side state of a tenant, as seen from the admin and tenant roles."""

    project_id: str
    status: ProjectStatus
    exists: bool
    accessible: bool
    tables: List[str]
    pooled: bool
    error: Optional[str] = None


class ProjectOverview(BaseModel):
    """Counts across all live projects and the audit log."""

    total_projects: int
    running_projects: int
    stopped_projects: int
    total_logs: int
    recent_actions: Dict[str, int]


# ---------------------------------------------------------
# Ports
# ---------------------------------------------------------


class PortAssignment(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    service_type: str
    port: int
    project_id: str
    status: str = "active"


class PortUsageStats(BaseModel):
    used: int
    available: int
    total: int
    usage_percentage: int
    range: str


# ---------------------------------------------------------
# Audit
# ---------------------------------------------------------


class AuditEntry(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    project_id: str
    action: str
    status: str
    message: str
    created_at: datetime
