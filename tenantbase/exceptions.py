"""
Custom exception hierarchy for consistent error responses.

Usage:
    from tenantbase.exceptions import TenantNotFoundError, ForbiddenStatementError

    raise TenantNotFoundError(project_id)
    raise ForbiddenStatementError("DROP")

These exceptions are caught by the handler registered in main.py and
converted to consistent JSON error responses with the shape:
    {"error": "<message>", "detail": "<optional extra info>"}
"""

from typing import Sequence

from fastapi import HTTPException, status


class AppError(HTTPException):
    """Base application error with a default status code."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, detail: str | None = None):
        super().__init__(
            status_code=self.__class__.status_code,
            detail=message,
        )
        self.message = message
        self.extra_detail = detail

    def __str__(self) -> str:
        return self.message


class NotFoundError(AppError):
    """Resource not found (404)."""

    status_code = status.HTTP_404_NOT_FOUND

    def __init__(self, resource: str, resource_id: int | str | None = None):
        if resource_id is not None:
            message = f"{resource} not found (id={resource_id})"
        else:
            message = f"{resource} not found"
        super().__init__(message)


class ForbiddenError(AppError):
    """Forbidden access (403)."""

    status_code = status.HTTP_403_FORBIDDEN

    def __init__(self, message: str = "Access denied", detail: str | None = None):
        super().__init__(message, detail)


class UnauthorizedError(AppError):
    """Unauthorized access (401)."""

    status_code = status.HTTP_401_UNAUTHORIZED

    def __init__(self, message: str = "Authentication required", detail: str | None = None):
        super().__init__(message, detail)


class ConflictError(AppError):
    """Resource conflict (409)."""

    status_code = status.HTTP_409_CONFLICT


class ValidationError(AppError):
    """Validation error (400)."""

    status_code = status.HTTP_400_BAD_REQUEST


class ServiceError(AppError):
    """Internal service error (500)."""

    def __init__(self, message: str = "Internal server error", detail: str | None = None):
        super().__init__(message, detail)


class UnavailableError(AppError):
    """A dependency is not available right now (503)."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


# ---------------------------------------------------------
# Tenant errors
# ---------------------------------------------------------


class TenantNotFoundError(NotFoundError):
    """Operation addressed to an unknown project."""

    def __init__(self, project_id: str):
        super().__init__("Project", project_id)
        self.project_id = project_id


class TenantAlreadyExistsError(ConflictError):
    """The derived database name is already taken."""

    def __init__(self, database_name: str, detail: str | None = None):
        super().__init__(f"Database '{database_name}' already exists", detail)
        self.database_name = database_name


class PartialProvisioningError(ServiceError):
    """
    Provisioning failed after the tenant database was created.

    completed_steps lists the sub-steps that did succeed so the caller
    can compensate.
    """

    def __init__(
        self,
        database_name: str,
        failed_step: str,
        completed_steps: Sequence[str],
        cause: BaseException | None = None,
    ):
        super().__init__(
            f"Provisioning of '{database_name}' failed at step '{failed_step}'",
            detail=str(cause) if cause else None,
        )
        self.database_name = database_name
        self.failed_step = failed_step
        self.completed_steps = list(completed_steps)
        self.cause = cause


class PartialTeardownError(ServiceError):
    """Teardown stopped halfway; the project stays retryable."""

    def __init__(
        self,
        database_name: str,
        failed_step: str,
        completed_steps: Sequence[str],
        cause: BaseException | None = None,
    ):
        super().__init__(
            f"Teardown of '{database_name}' failed at step '{failed_step}'",
            detail=str(cause) if cause else None,
        )
        self.database_name = database_name
        self.failed_step = failed_step
        self.completed_steps = list(completed_steps)
        self.cause = cause


class ExhaustedRangeError(UnavailableError):
    """No free port left in a service type's range."""

    def __init__(self, service_type: str, start: int, end: int):
        super().__init__(f"No available port for {service_type} ({start}-{end})")
        self.service_type = service_type


class UnreachableTenantError(UnavailableError):
    """Tenant database did not answer the liveness probe."""

    def __init__(self, database_name: str, detail: str | None = None):
        super().__init__(f"Tenant database '{database_name}' is unreachable", detail)
        self.database_name = database_name


class InvalidTransitionError(ConflictError):
    """Lifecycle transition not allowed from the current status."""

    def __init__(self, project_id: str, current: str, target: str):
        super().__init__(f"Project {project_id} cannot go from '{current}' to '{target}'")
        self.current = current
        self.target = target


class StackCommandError(UnavailableError):
    """The external stack start/stop command failed."""


# ---------------------------------------------------------
# Query errors
# ---------------------------------------------------------


class InvalidIdentifierError(ValidationError):
    """A table/column/role/database name failed identifier validation."""

    step = "identifier"

    def __init__(self, name: object, reason: str = "invalid SQL identifier"):
        super().__init__(f"{reason}: {name!r}", detail=f"rejected at step '{self.step}'")
        self.name = name


class ForbiddenStatementError(ForbiddenError):
    """Raw statement starts with a denylisted keyword."""

    step = "denylist"

    def __init__(self, keyword: str):
        super().__init__(
            f"Statements starting with {keyword} are not allowed",
            detail=f"rejected at step '{self.step}'",
        )
        self.keyword = keyword


class QueryExecutionError(ValidationError):
    """The database rejected a statement that passed local validation."""

    step = "execute"

    def __init__(self, message: str, sqlstate: str | None = None):
        super().__init__(message, detail=f"sqlstate={sqlstate}" if sqlstate else None)
        self.sqlstate = sqlstate
