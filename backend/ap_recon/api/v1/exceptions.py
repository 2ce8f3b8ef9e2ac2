"""Invoice exception API endpoints."""
import uuid
from typing import Annotated

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from ap_recon.core.deps import ActorId, Meta, TenantId
from ap_recon.db.session import get_session
from ap_recon.schemas.exception_record import (
    ExceptionResolveRequest,
    ExceptionSummaryOut,
    InvoiceExceptionOut,
)
from ap_recon.services import exception_detection as detection_svc

router = APIRouter()


# ─── POST /invoices/{invoice_id}/exceptions/detect ───

@router.post(
    "/invoices/{invoice_id}/exceptions/detect",
    response_model=list[InvoiceExceptionOut],
    summary="Run exception detection for one invoice; returns newly opened exceptions",
)
async def detect_for_invoice(
    invoice_id: uuid.UUID,
    db: Annotated[AsyncSession, Depends(get_session)],
    tenant_id: TenantId,
    actor_id: ActorId,
    meta: Meta,
):
    created = await db.run_sync(
        detection_svc.detect_and_record,
        invoice_id, tenant_id, actor_id=actor_id, request_meta=meta
    )
    await db.commit()
    return created


# ─── GET /exceptions ───

@router.get("/exceptions", response_model=list[InvoiceExceptionOut], summary="List exceptions")
async def list_exceptions(
    db: Annotated[AsyncSession, Depends(get_session)],
    tenant_id: TenantId,
    exc_status: Annotated[str | None, Query(alias="status")] = "open",
    invoice_id: uuid.UUID | None = None,
    severity: str | None = None,
    exception_type: str | None = None,
    limit: Annotated[int, Query(ge=1, le=500)] = 100,
):
    return await db.run_sync(
        detection_svc.list_exceptions,
        tenant_id,
        status=exc_status,
        invoice_id=invoice_id,
        severity=severity,
        exception_type=exception_type,
        limit=limit,
    )


# ─── GET /exceptions/summary ───

@router.get("/exceptions/summary", response_model=ExceptionSummaryOut, summary="Open exception counts")
async def exception_summary(
    db: Annotated[AsyncSession, Depends(get_session)],
    tenant_id: TenantId,
):
    return await db.run_sync(detection_svc.exception_summary, tenant_id)


# ─── POST /exceptions/{exception_id}/resolve ───

@router.post("/exceptions/{exception_id}/resolve", response_model=InvoiceExceptionOut, summary="Resolve an exception")
async def resolve_exception(
    exception_id: uuid.UUID,
    body: ExceptionResolveRequest,
    db: Annotated[AsyncSession, Depends(get_session)],
    tenant_id: TenantId,
    actor_id: ActorId,
    meta: Meta,
):
    record = await db.run_sync(
        detection_svc.resolve_exception,
        exception_id, actor_id, body.notes, tenant_id=tenant_id, request_meta=meta
    )
    await db.commit()
    return record


# ─── POST /exceptions/{exception_id}/ignore ───

@router.post("/exceptions/{exception_id}/ignore", response_model=InvoiceExceptionOut, summary="Ignore an exception")
async def ignore_exception(
    exception_id: uuid.UUID,
    body: ExceptionResolveRequest,
    db: Annotated[AsyncSession, Depends(get_session)],
    tenant_id: TenantId,
    actor_id: ActorId,
    meta: Meta,
):
    record = await db.run_sync(
        detection_svc.ignore_exception,
        exception_id, actor_id, body.notes, tenant_id=tenant_id, request_meta=meta
    )
    await db.commit()
    return record


# ─── POST /exceptions/{exception_id}/start-review ───

@router.post(
    "/exceptions/{exception_id}/start-review",
    response_model=InvoiceExceptionOut,
    summary="Mark an open exception as in progress",
)
async def start_review(
    exception_id: uuid.UUID,
    db: Annotated[AsyncSession, Depends(get_session)],
    tenant_id: TenantId,
    actor_id: ActorId,
    meta: Meta,
):
    record = await db.run_sync(
        detection_svc.mark_in_progress,
        exception_id, actor_id, tenant_id=tenant_id, request_meta=meta
    )
    await db.commit()
    return record
