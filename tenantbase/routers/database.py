"""
Tenant database routes.

Every route needs the project's database password in the
X-Database-Password header.
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Request

from tenantbase.dependencies import get_gateway, get_orchestrator, get_tenant_credential
from tenantbase.exceptions import NotFoundError
from tenantbase.schemas.project import TenantCredential
from tenantbase.schemas.query import (
    CreateTableRequest,
    EqualityFilter,
    QueryResult,
    RawQueryRequest,
    RecordPayload,
    SelectQuery,
    SortDirection,
    SortSpec,
)
from tenantbase.services.orchestrator import TenantLifecycleOrchestrator
from tenantbase.services.query_gateway import QueryGateway

router = APIRouter(prefix="/database/{project_id}")


# ---------------------------------------------------------
# Tables
# ---------------------------------------------------------


@router.post("/tables", status_code=201)
async def create_table(
    project_id: str,
    data: CreateTableRequest,
    credential: TenantCredential = Depends(get_tenant_credential),
    gateway: QueryGateway = Depends(get_gateway),
    orchestrator: TenantLifecycleOrchestrator = Depends(get_orchestrator),
):
    """Create a table in the project database."""
    table_name = await gateway.create_table(credential, data.table_name, data.columns)

    tables = await gateway.list_tables(credential)
    await orchestrator.refresh_table_count(project_id, len(tables))

    return {"success": True, "table_name": table_name}


@router.get("/tables")
async def list_tables(
    credential: TenantCredential = Depends(get_tenant_credential),
    gateway: QueryGateway = Depends(get_gateway),
) -> List[Dict[str, Any]]:
    return await gateway.list_tables(credential)


@router.get("/tables/{table_name}/schema")
async def get_table_schema(
    table_name: str,
    credential: TenantCredential = Depends(get_tenant_credential),
    gateway: QueryGateway = Depends(get_gateway),
) -> List[Dict[str, Any]]:
    columns = await gateway.get_schema(credential, table_name)
    if not columns:
        raise NotFoundError("Table", table_name)
    return columns


# ---------------------------------------------------------
# Raw SQL
# ---------------------------------------------------------


@router.post("/query", response_model=QueryResult)
async def execute_query(
    data: RawQueryRequest,
    credential: TenantCredential = Depends(get_tenant_credential),
    gateway: QueryGateway = Depends(get_gateway),
):
    """
    Run SQL against the project database.

    Statements starting with DROP, TRUNCATE, ALTER or DELETE FROM are
    refused with 403.
    """
    return await gateway.execute_raw(credential, data.sql, data.params)


# ---------------------------------------------------------
# Records
# ---------------------------------------------------------


@router.post("/tables/{table_name}/records", status_code=201)
async def insert_record(
    table_name: str,
    data: RecordPayload,
    credential: TenantCredential = Depends(get_tenant_credential),
    gateway: QueryGateway = Depends(get_gateway),
) -> Dict[str, Any]:
    record = await gateway.insert(credential, table_name, data.data)
    if record is None:
        raise NotFoundError("Inserted record")
    return record


# Query parameters that page or sort; every other parameter is a column filter
PAGING_PARAMS = {"limit", "offset", "order_by", "direction"}


@router.get("/tables/{table_name}/records")
async def list_records(
    request: Request,
    table_name: str,
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    order_by: Optional[str] = None,
    direction: SortDirection = SortDirection.ASC,
    credential: TenantCredential = Depends(get_tenant_credential),
    gateway: QueryGateway = Depends(get_gateway),
) -> List[Dict[str, Any]]:
    """
    Page through a table.

    Any other query parameter is an equality filter on the column of that
    name, e.g. ?status=open&zip=00123. Values are compared as text.
    """
    filters = [
        EqualityFilter(column=column, value=value)
        for column, value in request.query_params.multi_items()
        if column not in PAGING_PARAMS
    ]
    query = SelectQuery(
        filters=filters,
        sort=SortSpec(column=order_by, direction=direction) if order_by else None,
        limit=limit,
        offset=offset,
    )
    return await gateway.select(credential, table_name, query)


@router.put("/tables/{table_name}/records/{record_id}")
async def update_record(
    table_name: str,
    record_id: str,
    data: RecordPayload,
    credential: TenantCredential = Depends(get_tenant_credential),
    gateway: QueryGateway = Depends(get_gateway),
) -> Dict[str, Any]:
    record = await gateway.update(credential, table_name, record_id, data.data)
    if record is None:
        raise NotFoundError("Record", record_id)
    return record


@router.delete("/tables/{table_name}/records/{record_id}")
async def delete_record(
    table_name: str,
    record_id: str,
    credential: TenantCredential = Depends(get_tenant_credential),
    gateway: QueryGateway = Depends(get_gateway),
):
    record = await gateway.delete(credential, table_name, record_id)
    if record is None:
        raise NotFoundError("Record", record_id)
    return {"success": True, "deleted": record}
