"""Invoice staleness API endpoints."""
import uuid
from typing import Annotated

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from ap_recon.core.deps import ActorId, Meta, TenantId
from ap_recon.db.session import get_session
from ap_recon.schemas.staleness import InvoiceStalenessOut, StalenessResolveRequest, StalenessSummaryOut
from ap_recon.services import staleness as staleness_svc

router = APIRouter()


# ─── POST /staleness/detect ───

@router.post("/detect", response_model=list[InvoiceStalenessOut], summary="Run a staleness scan for the tenant")
async def detect(
    db: Annotated[AsyncSession, Depends(get_session)],
    tenant_id: TenantId,
    actor_id: ActorId,
    meta: Meta,
):
    records = await db.run_sync(
        staleness_svc.detect_and_record, tenant_id, actor_id=actor_id, request_meta=meta
    )
    await db.commit()
    return records


# ─── GET /staleness ───

@router.get("", response_model=list[InvoiceStalenessOut], summary="List stale invoices")
async def list_staleness(
    db: Annotated[AsyncSession, Depends(get_session)],
    tenant_id: TenantId,
    level: str | None = None,
    include_resolved: bool = False,
    limit: Annotated[int, Query(ge=1, le=500)] = 100,
):
    return await db.run_sync(
        staleness_svc.list_staleness,
        tenant_id, level=level, include_resolved=include_resolved, limit=limit
    )


# ─── GET /staleness/summary ───

@router.get("/summary", response_model=StalenessSummaryOut, summary="Stale invoice counts")
async def staleness_summary(
    db: Annotated[AsyncSession, Depends(get_session)],
    tenant_id: TenantId,
):
    return await db.run_sync(staleness_svc.staleness_summary, tenant_id)


# ─── POST /staleness/{staleness_id}/resolve ───

@router.post("/{staleness_id}/resolve", response_model=InvoiceStalenessOut, summary="Resolve a staleness record")
async def resolve(
    staleness_id: uuid.UUID,
    body: StalenessResolveRequest,
    db: Annotated[AsyncSession, Depends(get_session)],
    tenant_id: TenantId,
    actor_id: ActorId,
    meta: Meta,
):
    record = await db.run_sync(
        staleness_svc.resolve_staleness,
        staleness_id, actor_id, body.notes, tenant_id=tenant_id, request_meta=meta
    )
    await db.commit()
    return record
