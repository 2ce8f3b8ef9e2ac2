"""Audit ledger API endpoints."""
import csv
import io
from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Depends, Query
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession

from ap_recon.core.deps import TenantId
from ap_recon.db.session import get_session
from ap_recon.schemas.audit import AuditRecordOut, ChainVerificationOut
from ap_recon.services import audit as audit_svc

router = APIRouter()


def _filters(
    tenant_id: TenantId,
    entity_type: Annotated[str | None, Query(description="Filter by entity type (e.g., 'invoice')")] = None,
    entity_id: Annotated[str | None, Query()] = None,
    action: Annotated[str | None, Query()] = None,
    actor_id: Annotated[str | None, Query()] = None,
    workflow_stage: Annotated[str | None, Query()] = None,
    start_date: Annotated[datetime | None, Query(description="Records from this date (ISO 8601)")] = None,
    end_date: Annotated[datetime | None, Query(description="Records until this date (ISO 8601)")] = None,
    limit: Annotated[int, Query(ge=1, le=1000)] = 100,
) -> audit_svc.AuditSearchFilters:
    return audit_svc.AuditSearchFilters(
        tenant_id=tenant_id,
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        actor_id=actor_id,
        workflow_stage=workflow_stage,
        start_date=start_date,
        end_date=end_date,
        limit=limit,
    )


# ─── GET /audit ───

@router.get("", response_model=list[AuditRecordOut], summary="Search audit records")
async def search_audit_records(
    db: Annotated[AsyncSession, Depends(get_session)],
    filters: Annotated[audit_svc.AuditSearchFilters, Depends(_filters)],
):
    """Newest first, scoped to the caller's tenant."""
    return await db.run_sync(audit_svc.search, filters)


# ─── GET /audit/export ───

@router.get(
    "/export",
    summary="Export audit records as CSV",
    description="Stream audit records as a CSV file using the same filters as search.",
)
async def export_audit_records(
    db: Annotated[AsyncSession, Depends(get_session)],
    filters: Annotated[audit_svc.AuditSearchFilters, Depends(_filters)],
):
    records = await db.run_sync(audit_svc.search, filters)

    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow([
        "id", "entity_type", "entity_id", "sequence", "action", "actor_id",
        "workflow_stage", "proof_timestamp", "content_hash", "previous_hash",
    ])
    for record in records:
        writer.writerow([
            str(record.id),
            record.entity_type,
            record.entity_id,
            record.sequence,
            record.action,
            record.actor_id,
            record.workflow_stage or "",
            record.proof_timestamp.isoformat() if record.proof_timestamp else "",
            record.content_hash,
            record.previous_hash or "",
        ])

    output.seek(0)
    return StreamingResponse(
        iter([output.getvalue()]),
        media_type="text/csv",
        headers={"Content-Disposition": "attachment; filename=audit-records.csv"},
    )


# ─── GET /audit/{entity_type}/{entity_id} ───

@router.get(
    "/{entity_type}/{entity_id}",
    response_model=list[AuditRecordOut],
    summary="Full audit chain of one entity, oldest first",
)
async def get_entity_trail(
    entity_type: str,
    entity_id: str,
    db: Annotated[AsyncSession, Depends(get_session)],
    tenant_id: TenantId,
):
    records = await db.run_sync(audit_svc.get_by_entity, entity_type, entity_id)
    return [r for r in records if r.tenant_id in (None, tenant_id)]


# ─── GET /audit/{entity_type}/{entity_id}/verify ───

@router.get(
    "/{entity_type}/{entity_id}/verify",
    response_model=ChainVerificationOut,
    summary="Verify the hash chain of one entity",
)
async def verify_entity_chain(
    entity_type: str,
    entity_id: str,
    db: Annotated[AsyncSession, Depends(get_session)],
    tenant_id: TenantId,
):
    result = await db.run_sync(audit_svc.verify_integrity, entity_type, entity_id, tenant_id=tenant_id)
    return ChainVerificationOut.model_validate(result, from_attributes=True)
