"""
Tenant Database Provisioner.

Creates and drops the per-project PostgreSQL database, login role and
grants on the shared server. Database and role names must already be
normalized by tenantbase.services.credentials; every statement embeds
them through tenantbase.sql.quote_identifier.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

import asyncpg
from pydantic import SecretStr

from tenantbase.config import Settings, get_settings
from tenantbase.exceptions import (
    PartialProvisioningError,
    PartialTeardownError,
    TenantAlreadyExistsError,
)
from tenantbase.locks import KeyedLock
from tenantbase.schemas.project import TenantCredential
from tenantbase.services.credentials import generate_secret
from tenantbase.sql import quote_identifier, quote_literal

logger = logging.getLogger(__name__)

Connect = Callable[..., Awaitable[Any]]

# Issued from a session connected to the tenant database itself
SCHEMA_GRANTS = (
    "ALTER SCHEMA public OWNER TO {role}",
    "GRANT ALL ON SCHEMA public TO {role}",
    "GRANT ALL PRIVILEGES ON ALL TABLES IN SCHEMA public TO {role}",
    "GRANT ALL PRIVILEGES ON ALL SEQUENCES IN SCHEMA public TO {role}",
    "ALTER DEFAULT PRIVILEGES IN SCHEMA public GRANT ALL ON TABLES TO {role}",
    "ALTER DEFAULT PRIVILEGES IN SCHEMA public GRANT ALL ON SEQUENCES TO {role}",
    "GRANT USAGE ON SCHEMA public TO {role}",
    "GRANT CREATE ON SCHEMA public TO {role}",
)


class ProvisioningService:
    """
    Creates and drops tenant databases and roles.

    create_tenant / drop_tenant for the same database name are serialized;
    different tenants run in parallel.
    """

    def __init__(self, settings: Optional[Settings] = None, connect: Connect = asyncpg.connect):
        self._settings = settings or get_settings()
        self._connect = connect
        self._locks = KeyedLock()

    async def get_admin_connection(self, database: Optional[str] = None):
        """
        Get a connection using PostgreSQL admin credentials.

        Connects to the admin database unless another database is named.
        """
        settings = self._settings
        database = database or settings.pg_admin_database

        logger.debug(
            "Admin connection: user=%s, host=%s:%s, database=%s",
            settings.pg_admin_user,
            settings.db_host,
            settings.db_port,
            database,
        )

        return await self._connect(
            host=settings.db_host,
            port=settings.db_port,
            user=settings.pg_admin_user,
            password=settings.pg_admin_password,
            database=database,
        )

    async def create_tenant(self, database_name: str, role_name: str) -> TenantCredential:
        """
        Provision a new tenant database.

        Steps, in order:
        1. existence check
        2. CREATE DATABASE
        3. CREATE ROLE with a generated secret
        4. database-level grant
        5. schema ownership + grants, from a session on the new database

        Raises TenantAlreadyExistsError if the database exists, and
        PartialProvisioningError if anything fails after step 2.
        """
        db_ident = quote_identifier(database_name)
        role_ident = quote_identifier(role_name)

        async with self._locks.hold(database_name):
            secret = generate_secret()
            completed: List[str] = []
            step = "connect"
            conn = None
            tenant_conn = None

            try:
                conn = await self.get_admin_connection()

                step = "check_exists"
                exists = await conn.fetchval(
                    "SELECT 1 FROM pg_database WHERE datname = $1", database_name
                )
                if exists:
                    raise TenantAlreadyExistsError(database_name)
                completed.append(step)

                step = "create_database"
                try:
                    await conn.execute(f"CREATE DATABASE {db_ident}")
                except asyncpg.DuplicateDatabaseError:
                    # Created by something outside this process since the check
                    raise TenantAlreadyExistsError(database_name) from None
                completed.append(step)
                logger.info("Created database: %s", database_name)

                step = "create_role"
                await conn.execute(
                    f"CREATE ROLE {role_ident} WITH LOGIN PASSWORD {quote_literal(secret)}"
                )
                completed.append(step)
                logger.info("Created role: %s", role_name)

                step = "grant_database"
                # Other tenants' roles must not be able to connect here
                await conn.execute(f"REVOKE ALL ON DATABASE {db_ident} FROM PUBLIC")
                await conn.execute(f"GRANT ALL PRIVILEGES ON DATABASE {db_ident} TO {role_ident}")
                completed.append(step)

                await conn.close()
                conn = None

                # Schema-level grants only work from inside the target database
                step = "connect_tenant"
                tenant_conn = await self.get_admin_connection(database_name)
                completed.append(step)

                step = "transfer_schema"
                await tenant_conn.execute(SCHEMA_GRANTS[0].format(role=role_ident))
                completed.append(step)

                step = "grant_schema"
                for statement in SCHEMA_GRANTS[1:]:
                    await tenant_conn.execute(statement.format(role=role_ident))
                completed.append(step)
                logger.info("Schema privileges granted: %s", database_name)

            except TenantAlreadyExistsError:
                raise
            except Exception as e:
                if "create_database" in completed:
                    logger.error(
                        "Provisioning %s failed at %s after %s: %s",
                        database_name,
                        step,
                        completed,
                        type(e).__name__,
                    )
                    raise PartialProvisioningError(database_name, step, completed, e) from e
                raise
            finally:
                if conn is not None:
                    await conn.close()
                if tenant_conn is not None:
                    await tenant_conn.close()

        logger.info("Tenant database provisioned successfully: %s", database_name)
        return TenantCredential(
            username=role_name,
            password=SecretStr(secret),
            host=self._settings.db_host,
            port=self._settings.db_port,
            database=database_name,
        )

    async def rollback(self, error: PartialProvisioningError, role_name: str) -> None:
        """
        Best-effort cleanup of a partially provisioned tenant.

        Drops the database, and the role only if this provisioning run
        created it.
        """
        drop_role = "create_role" in error.completed_steps
        try:
            await self.drop_tenant(error.database_name, role_name, drop_role=drop_role)
            logger.info("Rolled back partial tenant %s", error.database_name)
        except Exception:
            logger.exception("Rollback of partial tenant %s failed", error.database_name)

    async def drop_tenant(self, database_name: str, role_name: str, drop_role: bool = True) -> None:
        """
        Drop a tenant database and role.

        Idempotent: missing objects are not an error. WARNING: this
        permanently deletes all tenant data.
        """
        db_ident = quote_identifier(database_name)
        role_ident = quote_identifier(role_name)

        async with self._locks.hold(database_name):
            completed: List[str] = []
            step = "connect"
            conn = None
            try:
                conn = await self.get_admin_connection()

                step = "terminate_sessions"
                await conn.execute(
                    "SELECT pg_terminate_backend(pid) FROM pg_stat_activity "
                    "WHERE datname = $1 AND pid <> pg_backend_pid()",
                    database_name,
                )
                completed.append(step)

                step = "drop_database"
                await conn.execute(f"DROP DATABASE IF EXISTS {db_ident}")
                completed.append(step)
                logger.info("Dropped database: %s", database_name)

                if drop_role:
                    step = "drop_role"
                    await conn.execute(f"DROP ROLE IF EXISTS {role_ident}")
                    completed.append(step)
                    logger.info("Dropped role: %s", role_name)

            except Exception as e:
                if "drop_database" in completed:
                    raise PartialTeardownError(database_name, step, completed, e) from e
                raise
            finally:
                if conn is not None:
                    await conn.close()

    async def tenant_exists(self, database_name: str, role_name: str) -> Dict[str, bool]:
        """Existence of the tenant's database and role on the server."""
        conn = await self.get_admin_connection()
        try:
            database = await conn.fetchval(
                "SELECT 1 FROM pg_database WHERE datname = $1", database_name
            )
            role = await conn.fetchval("SELECT 1 FROM pg_roles WHERE rolname = $1", role_name)
        finally:
            await conn.close()

        return {"database": database is not None, "role": role is not None}

    async def check_tenant(self, credential: TenantCredential) -> Dict[str, Any]:
        """
        Check tenant database status and health.

        Returns dict with:
        - exists: bool - database exists
        - accessible: bool - can connect with the tenant credentials
        - tables: list - tables in the public schema
        - error: str | None
        """
        result: Dict[str, Any] = {
            "exists": False,
            "accessible": False,
            "tables": [],
            "error": None,
        }

        try:
            existence = await self.tenant_exists(credential.database, credential.username)
        except Exception as e:
            result["error"] = f"Admin connection failed: {type(e).__name__}"
            return result

        result["exists"] = existence["database"]
        if not result["exists"]:
            result["error"] = "Database does not exist"
            return result

        tenant_conn = None
        try:
            tenant_conn = await self._connect(
                host=credential.host,
                port=credential.port,
                user=credential.username,
                password=credential.password.get_secret_value(),
                database=credential.database,
            )
            result["accessible"] = True

            tables = await tenant_conn.fetch(
                "SELECT table_name FROM information_schema.tables "
                "WHERE table_schema = 'public' ORDER BY table_name"
            )
            result["tables"] = [t["table_name"] for t in tables]
        except Exception as e:
            result["error"] = f"Tenant connection failed: {type(e).__name__}"
        finally:
            if tenant_conn is not None:
                await tenant_conn.close()

        return result
