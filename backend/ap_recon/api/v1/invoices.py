"""Invoice status API endpoints."""
import uuid
from typing import Annotated

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from ap_recon.core.deps import ActorId, Meta, TenantId
from ap_recon.db.session import get_session
from ap_recon.schemas.invoice import InvoiceOut, InvoiceStatusUpdate
from ap_recon.services.invoice_status import update_status

router = APIRouter()


# ─── POST /invoices/{invoice_id}/status ───

@router.post("/{invoice_id}/status", response_model=InvoiceOut, summary="Change an invoice's status")
async def change_status(
    invoice_id: uuid.UUID,
    body: InvoiceStatusUpdate,
    db: Annotated[AsyncSession, Depends(get_session)],
    tenant_id: TenantId,
    actor_id: ActorId,
    meta: Meta,
):
    invoice = await db.run_sync(
        update_status,
        invoice_id,
        body.status,
        actor_id=actor_id,
        tenant_id=tenant_id,
        notes=body.notes,
        expected_next_step=body.expected_next_step,
        request_meta=meta,
    )
    await db.commit()
    return invoice
