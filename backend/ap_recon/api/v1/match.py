"""3-way match and auto-approval API endpoints."""
import uuid
from typing import Annotated

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from ap_recon.core.deps import ActorId, Meta, TenantId
from ap_recon.db.session import get_session
from ap_recon.rules import match_engine
from ap_recon.schemas.match import AutoApprovalOut, MatchOut, MatchRejectRequest, MatchRequest
from ap_recon.services.auto_approval import check_auto_approval

router = APIRouter()


# ─── POST /matches ───

@router.post(
    "/matches",
    response_model=MatchOut,
    status_code=status.HTTP_200_OK,
    summary="Match a purchase order, goods receipt and invoice",
)
async def create_or_update_match(
    body: MatchRequest,
    db: Annotated[AsyncSession, Depends(get_session)],
    tenant_id: TenantId,
    actor_id: ActorId,
    meta: Meta,
):
    """Idempotent per triple: re-posting the same documents updates the match."""
    outcome = await db.run_sync(
        match_engine.match_documents,
        po_id=body.purchase_order_id,
        grn_id=body.goods_receipt_id,
        invoice_id=body.invoice_id,
        tenant_id=tenant_id,
        actor_id=actor_id,
        request_meta=meta,
    )
    await db.commit()
    return outcome.match


# ─── GET /matches/{match_id} ───

@router.get("/matches/{match_id}", response_model=MatchOut, summary="Get a match")
async def get_match(
    match_id: uuid.UUID,
    db: Annotated[AsyncSession, Depends(get_session)],
    tenant_id: TenantId,
):
    return await db.run_sync(match_engine.get_match, match_id, tenant_id)


# ─── POST /matches/{match_id}/approve ───

@router.post("/matches/{match_id}/approve", response_model=MatchOut, summary="Approve a pending match")
async def approve_match(
    match_id: uuid.UUID,
    db: Annotated[AsyncSession, Depends(get_session)],
    tenant_id: TenantId,
    actor_id: ActorId,
    meta: Meta,
):
    match = await db.run_sync(
        match_engine.approve_match, match_id, actor_id, tenant_id=tenant_id, request_meta=meta
    )
    await db.commit()
    return match


# ─── POST /matches/{match_id}/reject ───

@router.post("/matches/{match_id}/reject", response_model=MatchOut, summary="Reject a pending match")
async def reject_match(
    match_id: uuid.UUID,
    body: MatchRejectRequest,
    db: Annotated[AsyncSession, Depends(get_session)],
    tenant_id: TenantId,
    actor_id: ActorId,
    meta: Meta,
):
    match = await db.run_sync(
        match_engine.reject_match,
        match_id, actor_id, body.reason, tenant_id=tenant_id, request_meta=meta
    )
    await db.commit()
    return match


# ─── POST /invoices/{invoice_id}/auto-approval ───

@router.post(
    "/invoices/{invoice_id}/auto-approval",
    response_model=AutoApprovalOut,
    summary="Evaluate the tenant's auto-approval rule for an invoice",
)
async def evaluate_auto_approval(
    invoice_id: uuid.UUID,
    db: Annotated[AsyncSession, Depends(get_session)],
    tenant_id: TenantId,
    meta: Meta,
):
    result = await db.run_sync(check_auto_approval, invoice_id, tenant_id, request_meta=meta)
    await db.commit()
    return AutoApprovalOut(
        approved=result.approved,
        reason=result.reason,
        rule_id=result.rule_id,
        match_id=result.match_id,
        matching_score=result.matching_score,
        variance_amount=result.variance_amount,
        criteria=result.criteria,
    )
