"""Tests for the project lifecycle orchestrator."""

import asyncio

import pytest

from tenantbase.exceptions import (
    ExhaustedRangeError,
    InvalidTransitionError,
    PartialProvisioningError,
    PartialTeardownError,
    StackCommandError,
    TenantAlreadyExistsError,
    TenantNotFoundError,
    UnauthorizedError,
)
from tenantbase.schemas.project import ProjectEnvironment, ProjectStatus
from tenantbase.services.port_allocator import PortAllocator

from conftest import TEST_RANGES


# ---------------------------------------------------------
# Create
# ---------------------------------------------------------


@pytest.mark.asyncio
async def test_create_project(orchestrator, registry, ledger, fake_server, audit):
    project, credential = await orchestrator.create_project("My Shop", "demo")

    assert project.status == ProjectStatus.ACTIVE
    assert project.database_name == "my_shop"
    assert project.role_name == "my_shop_user"
    assert set(project.ports) == {"api", "db", "studio", "inbucket", "analytics"}
    assert registry.projects[project.id] == project

    assert "my_shop" in fake_server.databases
    assert "my_shop_user" in fake_server.roles
    assert len(ledger.assignments) == 5

    secret = credential.password.get_secret_value()
    assert secret not in project.encrypted_secret
    assert orchestrator.get_credential(project).password.get_secret_value() == secret

    assert audit.actions(project.id) == [("CREATE", "SUCCESS")]


@pytest.mark.asyncio
async def test_create_duplicate_name_rejected(orchestrator, fake_server):
    await orchestrator.create_project("shop")

    with pytest.raises(TenantAlreadyExistsError):
        await orchestrator.create_project("Shop")


@pytest.mark.asyncio
async def test_concurrent_create_same_name(orchestrator, registry, ledger):
    results = await asyncio.gather(
        orchestrator.create_project("shop"),
        orchestrator.create_project("shop"),
        return_exceptions=True,
    )

    errors = [r for r in results if isinstance(r, Exception)]
    assert len(errors) == 1
    assert isinstance(errors[0], TenantAlreadyExistsError)
    assert len(registry.projects) == 1
    assert len(ledger.assignments) == 5


@pytest.mark.asyncio
async def test_deleted_names_are_never_reused(orchestrator):
    project, _ = await orchestrator.create_project("shop")
    await orchestrator.delete_project(project.id)

    with pytest.raises(TenantAlreadyExistsError):
        await orchestrator.create_project("shop")


@pytest.mark.asyncio
async def test_create_compensates_partial_provisioning(orchestrator, fake_server, ledger, registry, audit):
    fake_server.fail_on = "GRANT ALL ON SCHEMA"

    with pytest.raises(PartialProvisioningError):
        await orchestrator.create_project("shop")

    assert fake_server.databases == set()
    assert fake_server.roles == set()
    assert ledger.assignments == []
    assert registry.projects == {}
    assert [a for a, _ in audit.actions()] == ["CREATE"]
    assert audit.entries[0].status == "ERROR"


@pytest.mark.asyncio
async def test_create_compensates_registry_failure(orchestrator, fake_server, ledger, registry):
    registry.fail_create = RuntimeError("registry down")

    with pytest.raises(RuntimeError, match="registry down"):
        await orchestrator.create_project("shop")

    assert fake_server.databases == set()
    assert fake_server.roles == set()
    assert ledger.assignments == []


@pytest.mark.asyncio
async def test_create_with_exhausted_ports_provisions_nothing(
    registry, audit, ledger, provisioner, pools, runner, test_settings, fake_server, monkeypatch
):
    from tenantbase.services.orchestrator import TenantLifecycleOrchestrator

    ports = PortAllocator(ledger, dict(TEST_RANGES, studio=(57000, 57000)))
    monkeypatch.setattr(ports, "is_port_bindable", lambda port: True)
    orchestrator = TenantLifecycleOrchestrator(
        registry, audit, ports, provisioner, pools, runner, settings=test_settings
    )
    await orchestrator.create_project("first")

    with pytest.raises(ExhaustedRangeError):
        await orchestrator.create_project("second")

    assert fake_server.databases == {"first"}
    assert len(ledger.assignments) == 5


# ---------------------------------------------------------
# Start / stop
# ---------------------------------------------------------


@pytest.mark.asyncio
async def test_start_and_stop(orchestrator, runner, audit):
    project, _ = await orchestrator.create_project("shop")

    started = await orchestrator.start_project(project.id)
    assert started.status == ProjectStatus.RUNNING
    runner.start.assert_awaited_once_with("shop")

    stopped = await orchestrator.stop_project(project.id)
    assert stopped.status == ProjectStatus.STOPPED
    runner.stop.assert_awaited_once_with("shop")

    restarted = await orchestrator.start_project(project.id)
    assert restarted.status == ProjectStatus.RUNNING

    assert audit.actions(project.id) == [
        ("CREATE", "SUCCESS"),
        ("START", "SUCCESS"),
        ("STOP", "SUCCESS"),
        ("START", "SUCCESS"),
    ]


@pytest.mark.asyncio
async def test_invalid_transitions(orchestrator, audit):
    project, _ = await orchestrator.create_project("shop")

    with pytest.raises(InvalidTransitionError) as exc:
        await orchestrator.stop_project(project.id)
    assert exc.value.status_code == 409

    await orchestrator.start_project(project.id)
    with pytest.raises(InvalidTransitionError):
        await orchestrator.start_project(project.id)
    with pytest.raises(InvalidTransitionError):
        await orchestrator.delete_project(project.id)

    assert ("STOP", "ERROR") in audit.actions(project.id)
    assert ("DELETE", "ERROR") in audit.actions(project.id)


@pytest.mark.asyncio
async def test_failed_stack_command_keeps_status(orchestrator, runner, audit):
    project, _ = await orchestrator.create_project("shop")
    runner.start.side_effect = StackCommandError("'supabase start' exited with status 1")

    with pytest.raises(StackCommandError):
        await orchestrator.start_project(project.id)

    assert (await orchestrator.get_project(project.id)).status == ProjectStatus.ACTIVE
    assert audit.actions(project.id)[-1] == ("START", "ERROR")


# ---------------------------------------------------------
# Delete
# ---------------------------------------------------------


@pytest.mark.asyncio
async def test_delete_project(orchestrator, fake_server, ledger, registry, pools, audit):
    project, credential = await orchestrator.create_project("shop")
    await pools.get_pool(credential)

    await orchestrator.delete_project(project.id)

    assert fake_server.databases == set()
    assert fake_server.roles == set()
    assert ledger.assignments == []
    assert not pools.has_pool("shop", "shop_user")
    assert registry.projects[project.id].status == ProjectStatus.DELETED
    assert audit.actions(project.id)[-1] == ("DELETE", "SUCCESS")
    assert all(s.used == 0 for s in (await orchestrator.get_usage_stats()).values())

    with pytest.raises(TenantNotFoundError):
        await orchestrator.get_project(project.id)


@pytest.mark.asyncio
async def test_delete_unknown_project(orchestrator):
    with pytest.raises(TenantNotFoundError):
        await orchestrator.delete_project("missing")


@pytest.mark.asyncio
async def test_partial_teardown_leaves_project_retryable(orchestrator, fake_server, ledger, audit):
    project, _ = await orchestrator.create_project("shop")
    fake_server.fail_on = "DROP ROLE"

    with pytest.raises(PartialTeardownError):
        await orchestrator.delete_project(project.id)

    pending = await orchestrator.get_project(project.id)
    assert pending.status == ProjectStatus.DELETE_PENDING
    assert len(ledger.assignments) == 5
    assert audit.actions(project.id)[-1] == ("DELETE", "ERROR")

    await orchestrator.delete_project(project.id)

    assert fake_server.roles == set()
    assert ledger.assignments == []
    assert audit.actions(project.id)[-1] == ("DELETE", "SUCCESS")


@pytest.mark.asyncio
async def test_teardown_failure_before_drop_is_reported_as_partial(orchestrator, fake_server):
    project, _ = await orchestrator.create_project("shop")
    fake_server.fail_on = "SELECT pg_terminate_backend"

    with pytest.raises(PartialTeardownError) as exc:
        await orchestrator.delete_project(project.id)

    assert exc.value.completed_steps == []
    assert (await orchestrator.get_project(project.id)).status == ProjectStatus.DELETE_PENDING


@pytest.mark.asyncio
async def test_lifecycle_operations_on_same_project_do_not_overlap(orchestrator, runner):
    project, _ = await orchestrator.create_project("shop")
    active = 0
    overlap = False

    async def slow(*args):
        nonlocal active, overlap
        active += 1
        overlap = overlap or active > 1
        await asyncio.sleep(0.01)
        active -= 1

    runner.start.side_effect = slow
    runner.stop.side_effect = slow

    await asyncio.gather(
        orchestrator.start_project(project.id),
        orchestrator.stop_project(project.id),
        return_exceptions=True,
    )
    assert not overlap


# ---------------------------------------------------------
# Small operations
# ---------------------------------------------------------


@pytest.mark.asyncio
async def test_update_project_renames_only_metadata(orchestrator, audit):
    project, _ = await orchestrator.create_project("shop")

    updated = await orchestrator.update_project(project.id, name="Storefront", description="new")

    assert updated.name == "Storefront"
    assert updated.description == "new"
    assert updated.database_name == "shop"
    assert audit.actions(project.id)[-1] == ("UPDATE", "SUCCESS")


@pytest.mark.asyncio
async def test_verify_access(orchestrator):
    project, credential = await orchestrator.create_project("shop")

    verified = orchestrator.verify_access(project, credential.password.get_secret_value())
    assert verified.username == "shop_user"

    with pytest.raises(UnauthorizedError):
        orchestrator.verify_access(project, "wrong")


@pytest.mark.asyncio
async def test_list_projects_and_logs(orchestrator):
    first, _ = await orchestrator.create_project("one")
    second, _ = await orchestrator.create_project("two")
    await orchestrator.start_project(second.id)

    assert {p.id for p in await orchestrator.list_projects()} == {first.id, second.id}
    assert [p.id for p in await orchestrator.list_projects(ProjectStatus.RUNNING)] == [second.id]

    logs = await orchestrator.get_project_logs(second.id)
    assert [entry.action for entry in logs] == ["START", "CREATE"]


@pytest.mark.asyncio
async def test_refresh_table_count(orchestrator):
    project, _ = await orchestrator.create_project("shop")
    await orchestrator.refresh_table_count(project.id, 4)
    assert (await orchestrator.get_project(project.id)).table_count == 4


@pytest.mark.asyncio
async def test_shutdown_closes_pools(orchestrator, pools):
    _, credential = await orchestrator.create_project("shop")
    await pools.get_pool(credential)

    await orchestrator.shutdown()

    assert pools.get_stats()["active_pools"] == 0


# ---------------------------------------------------------
# Metadata, overview and health
# ---------------------------------------------------------


@pytest.mark.asyncio
async def test_project_metadata_and_owner_filter(orchestrator):
    tagged, _ = await orchestrator.create_project(
        "billing",
        owner_id="team-a",
        tags=["payments", "eu"],
        environment=ProjectEnvironment.STAGING,
    )
    plain, _ = await orchestrator.create_project("blog")

    assert tagged.owner_id == "team-a"
    assert tagged.tags == ["payments", "eu"]
    assert tagged.environment == ProjectEnvironment.STAGING
    assert plain.owner_id == "system"
    assert plain.tags == []
    assert plain.environment == ProjectEnvironment.DEVELOPMENT

    assert [p.id for p in await orchestrator.list_projects(owner_id="team-a")] == [tagged.id]
    assert len(await orchestrator.list_projects(limit=1)) == 1

    updated = await orchestrator.update_project(
        tagged.id, tags=["payments"], environment=ProjectEnvironment.PRODUCTION
    )
    assert updated.tags == ["payments"]
    assert updated.environment == ProjectEnvironment.PRODUCTION
    assert updated.name == "billing"


@pytest.mark.asyncio
async def test_logs_filtered_by_action(orchestrator):
    project, _ = await orchestrator.create_project("shop")
    await orchestrator.start_project(project.id)
    await orchestrator.stop_project(project.id)

    logs = await orchestrator.get_project_logs(project.id, action="START")
    assert [(e.action, e.status) for e in logs] == [("START", "SUCCESS")]


@pytest.mark.asyncio
async def test_overview_counts(orchestrator):
    first, _ = await orchestrator.create_project("one")
    second, _ = await orchestrator.create_project("two")
    await orchestrator.start_project(second.id)
    await orchestrator.delete_project(first.id)

    overview = await orchestrator.get_overview()

    assert overview.total_projects == 1
    assert overview.running_projects == 1
    assert overview.stopped_projects == 0
    assert overview.total_logs == 4
    assert overview.recent_actions == {"CREATE": 2, "START": 1, "DELETE": 1}


@pytest.mark.asyncio
async def test_check_health(orchestrator, pools, fake_server):
    project, credential = await orchestrator.create_project("shop")

    health = await orchestrator.check_health(project.id)
    assert health.exists is True
    assert health.accessible is True
    assert health.pooled is False
    assert health.error is None
    assert fake_server.connections[-1]["user"] == "shop_user"

    await pools.get_pool(credential)
    assert (await orchestrator.check_health(project.id)).pooled is True


@pytest.mark.asyncio
async def test_check_health_reports_missing_database(orchestrator, fake_server):
    project, _ = await orchestrator.create_project("shop")
    fake_server.databases.discard("shop")

    health = await orchestrator.check_health(project.id)
    assert health.exists is False
    assert health.error == "Database does not exist"
    assert health.status == ProjectStatus.ACTIVE


@pytest.mark.asyncio
async def test_check_health_unknown_project(orchestrator):
    with pytest.raises(TenantNotFoundError):
        await orchestrator.check_health("missing")
