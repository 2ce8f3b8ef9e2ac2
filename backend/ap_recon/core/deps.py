import uuid
from typing import Annotated

from fastapi import Depends, Header, HTTPException, Request, status

from ap_recon.core.config import settings
from ap_recon.services.audit import RequestMeta


def get_tenant_id(
    x_tenant_id: Annotated[str | None, Header(alias="X-Tenant-Id")] = None,
) -> uuid.UUID:
    """Tenant scope of the request, supplied by the portal gateway."""
    if not x_tenant_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Tenant-Id header is required.",
        )
    try:
        return uuid.UUID(x_tenant_id)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Tenant-Id must be a UUID.",
        )


def get_actor_id(
    x_actor_id: Annotated[str | None, Header(alias="X-Actor-Id")] = None,
) -> str:
    return x_actor_id or settings.SYSTEM_ACTOR


def get_request_meta(request: Request) -> RequestMeta:
    return RequestMeta(
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
        request_id=request.headers.get("x-request-id"),
    )


TenantId = Annotated[uuid.UUID, Depends(get_tenant_id)]
ActorId = Annotated[str, Depends(get_actor_id)]
Meta = Annotated[RequestMeta, Depends(get_request_meta)]
