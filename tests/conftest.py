"""
Shared test fixtures for the Tenantbase test suite.

The fakes here stand in for the registry tables and for the PostgreSQL
server so the services can be driven without a database.
"""

import asyncio
import re
from contextlib import asynccontextmanager
from datetime import datetime
from types import SimpleNamespace
from typing import Any, Dict, List, Optional, Set
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from tenantbase.config import Settings
from tenantbase.models.project import utcnow
from tenantbase.schemas.project import AuditEntry, PortAssignment, Project, ProjectStatus
from tenantbase.services.registry import (
    AuditLog,
    PortAlreadyReservedError,
    PortLedger,
    ProjectRegistry,
)

TEST_RANGES = {
    "api": (55000, 55009),
    "db": (56000, 56009),
    "studio": (57000, 57009),
    "inbucket": (58000, 58009),
    "analytics": (59000, 59009),
}


@pytest.fixture
def test_settings(tmp_path):
    """Settings configured for testing (no real DB connection needed)."""
    return Settings(
        database_url="sqlite+aiosqlite:///:memory:",
        db_host="tenants.test",
        db_port=5433,
        pg_admin_user="admin",
        pg_admin_password="admin-pass",
        secret_key="test-secret-key",
        port_ranges=TEST_RANGES,
        projects_root=str(tmp_path / "projects"),
        debug=True,
    )


# ---------------------------------------------------------
# In-memory registry
# ---------------------------------------------------------


class InMemoryProjectRegistry(ProjectRegistry):
    def __init__(self):
        self.projects: Dict[str, Project] = {}
        self.fail_create: Optional[Exception] = None

    async def create(self, project: Project) -> Project:
        if self.fail_create is not None:
            raise self.fail_create
        self.projects[project.id] = project
        return project

    async def find(self, project_id: str) -> Optional[Project]:
        project = self.projects.get(project_id)
        if project is None or project.status == ProjectStatus.DELETED:
            return None
        return project

    async def find_by_database_name(self, database_name: str) -> Optional[Project]:
        for project in self.projects.values():
            if project.database_name == database_name:
                return project
        return None

    async def update(self, project_id: str, **changes: Any) -> Optional[Project]:
        project = await self.find(project_id)
        if project is None:
            return None
        project = project.model_copy(update=changes)
        self.projects[project_id] = project
        return project

    async def delete(self, project_id: str) -> bool:
        project = await self.find(project_id)
        if project is None:
            return False
        self.projects[project_id] = project.model_copy(
            update={"status": ProjectStatus.DELETED, "ports": {}}
        )
        return True

    async def list(
        self,
        status: Optional[ProjectStatus] = None,
        owner_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Project]:
        projects = sorted(self.projects.values(), key=lambda p: p.created_at, reverse=True)
        if status is None:
            projects = [p for p in projects if p.status != ProjectStatus.DELETED]
        else:
            projects = [p for p in projects if p.status == status]
        if owner_id is not None:
            projects = [p for p in projects if p.owner_id == owner_id]
        return projects[:limit] if limit is not None else projects


class InMemoryAuditLog(AuditLog):
    def __init__(self):
        self.entries: List[AuditEntry] = []

    async def append(self, project_id: str, action: str, status: str, message: str) -> None:
        self.entries.append(
            AuditEntry(
                project_id=project_id,
                action=action,
                status=status,
                message=message,
                created_at=utcnow(),
            )
        )

    async def list(
        self, project_id: str, limit: int = 50, action: Optional[str] = None
    ) -> List[AuditEntry]:
        entries = [
            e
            for e in reversed(self.entries)
            if e.project_id == project_id and (action is None or e.action == action)
        ]
        return entries[:limit]

    async def action_counts(self, since: Optional[datetime] = None) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for e in self.entries:
            if since is None or e.created_at >= since:
                counts[e.action] = counts.get(e.action, 0) + 1
        return counts

    def actions(self, project_id: Optional[str] = None) -> List[tuple]:
        return [
            (e.action, e.status)
            for e in self.entries
            if project_id is None or e.project_id == project_id
        ]


class InMemoryPortLedger(PortLedger):
    def __init__(self):
        self.assignments: List[PortAssignment] = []

    async def reserved(self, service_type: str) -> Set[int]:
        await asyncio.sleep(0)
        return {a.port for a in self.assignments if a.service_type == service_type}

    async def reserve(self, assignment: PortAssignment) -> None:
        await asyncio.sleep(0)
        for a in self.assignments:
            if (a.service_type, a.port) == (assignment.service_type, assignment.port):
                raise PortAlreadyReservedError(f"{a.service_type}:{a.port}")
        self.assignments.append(assignment)

    async def release_port(self, service_type: str, port: int) -> None:
        self.assignments = [
            a for a in self.assignments if (a.service_type, a.port) != (service_type, port)
        ]

    async def release_project(self, project_id: str) -> List[PortAssignment]:
        released = [a for a in self.assignments if a.project_id == project_id]
        self.assignments = [a for a in self.assignments if a.project_id != project_id]
        return released

    async def all(self) -> List[PortAssignment]:
        return sorted(self.assignments, key=lambda a: (a.service_type, a.port))

    async def for_project(self, project_id: str) -> List[PortAssignment]:
        return [a for a in self.assignments if a.project_id == project_id]


# ---------------------------------------------------------
# Fake PostgreSQL server (admin connections)
# ---------------------------------------------------------

_CREATE_DB = re.compile(r'^CREATE DATABASE "(\w+)"')
_DROP_DB = re.compile(r'^DROP DATABASE IF EXISTS "(\w+)"')
_CREATE_ROLE = re.compile(r'^CREATE ROLE "(\w+)"')
_DROP_ROLE = re.compile(r'^DROP ROLE IF EXISTS "(\w+)"')


class FakeServer:
    """
    Tracks databases and roles the way CREATE/DROP statements change them.

    Set fail_on to a statement prefix to make the next matching execute
    raise.
    """

    def __init__(self):
        self.databases: Set[str] = set()
        self.roles: Set[str] = set()
        self.statements: List[str] = []
        self.connections: List[dict] = []
        self.fail_on: Optional[str] = None
        self.fail_with: Exception = RuntimeError("injected failure")

    async def connect(self, **kwargs) -> "FakeAdminConnection":
        await asyncio.sleep(0)
        self.connections.append(kwargs)
        return FakeAdminConnection(self, kwargs.get("database"))


class FakeAdminConnection:
    def __init__(self, server: FakeServer, database: Optional[str]):
        self.server = server
        self.database = database
        self.closed = False

    async def execute(self, sql: str, *args):
        await asyncio.sleep(0)
        server = self.server
        if server.fail_on and sql.startswith(server.fail_on):
            server.fail_on = None
            raise server.fail_with
        server.statements.append(sql)

        if m := _CREATE_DB.match(sql):
            server.databases.add(m.group(1))
        elif m := _DROP_DB.match(sql):
            server.databases.discard(m.group(1))
        elif m := _CREATE_ROLE.match(sql):
            server.roles.add(m.group(1))
        elif m := _DROP_ROLE.match(sql):
            server.roles.discard(m.group(1))
        return "OK"

    async def fetchval(self, sql: str, *args):
        await asyncio.sleep(0)
        if "pg_database" in sql:
            return 1 if args[0] in self.server.databases else None
        if "pg_roles" in sql:
            return 1 if args[0] in self.server.roles else None
        return 1

    async def fetch(self, sql: str, *args):
        return []

    async def close(self):
        self.closed = True


@pytest.fixture
def fake_server():
    return FakeServer()


# ---------------------------------------------------------
# Fake tenant pools
# ---------------------------------------------------------


class FakeStatement:
    def __init__(self, conn: "FakeTenantConnection", sql: str):
        self.conn = conn
        self.sql = sql

    async def fetch(self, *params):
        self.conn.executed.append((self.sql, params))
        if self.conn.error is not None:
            raise self.conn.error
        return self.conn.rows

    def get_statusmsg(self):
        return self.conn.status

    def get_attributes(self):
        if not self.conn.rows:
            return ()
        return tuple(
            SimpleNamespace(name=name, type=SimpleNamespace(name="text"))
            for name in self.conn.rows[0]
        )


class FakeTenantConnection:
    def __init__(self):
        self.executed: List[tuple] = []
        self.rows: List[dict] = []
        self.status = "SELECT 0"
        self.error: Optional[Exception] = None
        self.probe_error: Optional[Exception] = None
        self.probes = 0

    async def fetchval(self, sql: str, *args):
        await asyncio.sleep(0)
        self.probes += 1
        if self.probe_error is not None:
            raise self.probe_error
        return 1

    async def prepare(self, sql: str) -> FakeStatement:
        return FakeStatement(self, sql)


class FakePool:
    def __init__(self, conn: FakeTenantConnection, **kwargs):
        self.conn = conn
        self.kwargs = kwargs
        self.close = AsyncMock()

    @asynccontextmanager
    async def acquire(self):
        yield self.conn

    def get_size(self) -> int:
        return 1


class FakePoolFactory:
    """Drop-in for asyncpg.create_pool that counts how many pools were built."""

    def __init__(self):
        self.conn = FakeTenantConnection()
        self.pools: List[FakePool] = []
        self.error: Optional[Exception] = None

    async def __call__(self, **kwargs) -> FakePool:
        await asyncio.sleep(0.01)
        if self.error is not None:
            raise self.error
        pool = FakePool(self.conn, **kwargs)
        self.pools.append(pool)
        return pool


@pytest.fixture
def pool_factory():
    return FakePoolFactory()


# ---------------------------------------------------------
# Wired services
# ---------------------------------------------------------


@pytest.fixture
def registry():
    return InMemoryProjectRegistry()


@pytest.fixture
def audit():
    return InMemoryAuditLog()


@pytest.fixture
def ledger():
    return InMemoryPortLedger()


@pytest.fixture
def allocator(ledger, test_settings, monkeypatch):
    from tenantbase.services.port_allocator import PortAllocator

    allocator = PortAllocator(ledger, test_settings.port_ranges)
    monkeypatch.setattr(allocator, "is_port_bindable", lambda port: True)
    return allocator


@pytest.fixture
def provisioner(test_settings, fake_server):
    from tenantbase.services.tenant_provisioner import ProvisioningService

    return ProvisioningService(test_settings, connect=fake_server.connect)


@pytest.fixture
def pools(test_settings, pool_factory):
    from tenantbase.services.tenant_manager import ConnectionPoolRegistry

    return ConnectionPoolRegistry(test_settings, create_pool=pool_factory)


@pytest.fixture
def runner():
    runner = AsyncMock()
    runner.start.return_value = None
    runner.stop.return_value = None
    return runner


@pytest.fixture
def orchestrator(registry, audit, allocator, provisioner, pools, runner, test_settings):
    from tenantbase.services.orchestrator import TenantLifecycleOrchestrator

    return TenantLifecycleOrchestrator(
        registry=registry,
        audit=audit,
        ports=allocator,
        provisioner=provisioner,
        pools=pools,
        runner=runner,
        settings=test_settings,
    )


@pytest.fixture
def services(orchestrator, pools, test_settings):
    from tenantbase.dependencies import Services
    from tenantbase.services.query_gateway import QueryGateway

    return Services(
        settings=test_settings,
        database=None,
        orchestrator=orchestrator,
        gateway=QueryGateway(pools),
    )


@pytest_asyncio.fixture
async def app_client(services):
    """Test client against an app wired to the in-memory services."""
    from tenantbase.main import create_app

    app = create_app(services)

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
