"""
Schemas for the tenant query gateway.

Identifier fields (table, column names) are checked again in the gateway
via tenantbase.sql before they are embedded; the pattern here only gives
early 422s at the HTTP edge.
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

IDENTIFIER_REGEX = r"^[A-Za-z_][A-Za-z0-9_]*$"


class ColumnType(str, Enum):
    SERIAL = "SERIAL"
    INTEGER = "INTEGER"
    BIGINT = "BIGINT"
    SMALLINT = "SMALLINT"
    DECIMAL = "DECIMAL"
    NUMERIC = "NUMERIC"
    REAL = "REAL"
    DOUBLE_PRECISION = "DOUBLE PRECISION"
    VARCHAR = "VARCHAR"
    CHAR = "CHAR"
    TEXT = "TEXT"
    BOOLEAN = "BOOLEAN"
    DATE = "DATE"
    TIME = "TIME"
    TIMESTAMP = "TIMESTAMP"
    JSON = "JSON"
    JSONB = "JSONB"
    UUID = "UUID"


class ColumnDefinition(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(min_length=1, max_length=63)
    type: ColumnType
    nullable: bool = True
    primary_key: bool = Field(False, alias="primaryKey")
    unique: bool = False
    default: Optional[Any] = None


class CreateTableRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    table_name: str = Field(alias="tableName", min_length=1, max_length=63, pattern=IDENTIFIER_REGEX)
    columns: List[ColumnDefinition] = Field(min_length=1)


class SortDirection(str, Enum):
    ASC = "ASC"
    DESC = "DESC"


class EqualityFilter(BaseModel):
    """column = value"""

    column: str
    value: Any


class SortSpec(BaseModel):
    column: str
    direction: SortDirection = SortDirection.ASC


class SelectQuery(BaseModel):
    """Filter, sort and pagination for structured selects."""

    model_config = ConfigDict(extra="forbid")

    filters: List[EqualityFilter] = Field(default_factory=list)
    sort: Optional[SortSpec] = None
    limit: int = Field(100, ge=1, le=1000)
    offset: int = Field(0, ge=0)


class RecordPayload(BaseModel):
    data: Dict[str, Any] = Field(min_length=1)


class RawQueryRequest(BaseModel):
    sql: str = Field(min_length=1, max_length=10000)
    params: List[Any] = Field(default_factory=list)


class FieldInfo(BaseModel):
    name: str
    type: str


class QueryResult(BaseModel):
    rows: List[Dict[str, Any]]
    row_count: int
    command: str
    fields: List[FieldInfo] = Field(default_factory=list)
