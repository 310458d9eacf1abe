"""
FastAPI glue: permission-checking dependencies and error-to-HTTP mapping.

The host application authenticates the request and stores the user id on
`request.state.user_id`; the RoleService instance lives on `app.state.role_service`.
"""
import time
from typing import Callable, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from rolecore.core.logging import (
    api_logger,
    generate_request_id,
    get_request_id,
    roles_logger,
    set_request_id,
)
from .exceptions import (
    AlreadyAssigned,
    DefaultRoleImmutable,
    DuplicateName,
    HierarchyViolation,
    InvalidPosition,
    InvalidRoleConfiguration,
    MissingDefaultRole,
    NotAMember,
    NotAssigned,
    PermissionsError,
    RoleNotFound,
    TenantNotFound,
    UnknownPermission,
)
from .flags import Permission
from .resolver import ResolvedPermissions
from .service import RoleService


# Most specific classes first; the first isinstance match wins.
ERROR_STATUS = (
    (HierarchyViolation, status.HTTP_403_FORBIDDEN),
    (AlreadyAssigned, status.HTTP_409_CONFLICT),
    (NotAssigned, status.HTTP_409_CONFLICT),
    (DuplicateName, status.HTTP_409_CONFLICT),
    (RoleNotFound, status.HTTP_404_NOT_FOUND),
    (TenantNotFound, status.HTTP_404_NOT_FOUND),
    (NotAMember, status.HTTP_404_NOT_FOUND),
    (InvalidPosition, status.HTTP_400_BAD_REQUEST),
    (DefaultRoleImmutable, status.HTTP_400_BAD_REQUEST),
    (UnknownPermission, status.HTTP_400_BAD_REQUEST),
    (InvalidRoleConfiguration, status.HTTP_400_BAD_REQUEST),
    (MissingDefaultRole, status.HTTP_500_INTERNAL_SERVER_ERROR),
)


class PermissionDenied(HTTPException):
    def __init__(self, permission: str):
        super().__init__(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Missing permission: {permission}",
        )


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Propagates X-Request-ID (or generates one) and logs each request with its duration."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get('X-Request-ID') or generate_request_id()
        set_request_id(request_id)
        request.state.request_id = request_id
        start = time.time()

        response = await call_next(request)

        response.headers['X-Request-ID'] = request_id
        duration = round((time.time() - start) * 1000, 2)
        log_level = 'info' if response.status_code < 400 else 'warning'
        getattr(api_logger, log_level)(
            f"{request.method} {request.url.path} -> {response.status_code}",
            duration_ms=duration,
            status=response.status_code,
        )
        return response


def status_for(exc: PermissionsError) -> int:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return status.HTTP_400_BAD_REQUEST


def get_role_service(request: Request) -> RoleService:
    service = getattr(request.app.state, "role_service", None)
    if service is None:
        raise RuntimeError("RoleService is not configured on app.state.role_service")
    return service


async def current_user_id(request: Request) -> int:
    user_id = getattr(request.state, "user_id", None)
    if user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )
    return int(user_id)


def _int_param(request: Request, name: str) -> Optional[int]:
    raw = request.path_params.get(name)
    if raw is None:
        raw = request.query_params.get(name)
    if raw is None:
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid {name}: {raw!r}",
        )


def require_permission(
    permission: Permission,
    *,
    tenant_param: str = "tenant_id",
    channel_param: str | None = None,
):
    """Dependency factory: 403 unless the caller holds `permission` in the tenant.

    With `channel_param` the check runs against the channel's overrides.
    The dependency returns the caller's ResolvedPermissions.
    """
    async def dependency(
        request: Request,
        user_id: int = Depends(current_user_id),
        service: RoleService = Depends(get_role_service),
    ) -> ResolvedPermissions:
        tenant_id = _int_param(request, tenant_param)
        if tenant_id is None:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Missing {tenant_param}",
            )
        channel_id = _int_param(request, channel_param) if channel_param else None

        resolved = await service.resolve_permissions(user_id, tenant_id, channel_id)
        if not resolved.has(permission):
            roles_logger.info(
                f"[PERMS_DENIED] user_id={user_id} tenant_id={tenant_id} "
                f"channel_id={channel_id} permission={permission.name}"
            )
            raise PermissionDenied(permission.name)
        return resolved

    return dependency


async def permissions_error_handler(request: Request, exc: PermissionsError) -> JSONResponse:
    request_id = getattr(request.state, 'request_id', None) or get_request_id() or 'unknown'
    status_code = status_for(exc)

    if status_code >= 500:
        roles_logger.error(
            f"HTTP {status_code}: {exc.detail}",
            error=exc,
            path=str(request.url.path),
        )
    else:
        roles_logger.warning(
            f"HTTP {status_code}: {exc.detail}",
            path=str(request.url.path),
            status=status_code,
        )

    return JSONResponse(
        status_code=status_code,
        content={
            'detail': exc.detail,
            'code': exc.code,
            'request_id': request_id,
        },
        headers={'X-Request-ID': request_id},
    )


def install_exception_handlers(app: FastAPI) -> None:
    """Map PermissionsError onto HTTP responses tagged with the request id."""
    app.add_middleware(RequestContextMiddleware)
    app.add_exception_handler(PermissionsError, permissions_error_handler)
