"""Employee claim API endpoints."""
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from ap_recon.core.deps import Meta, TenantId
from ap_recon.db.session import get_session
from ap_recon.rules.policy_gate import ClaimSubmission, PolicyContext, PolicyValidationResult, validate_claim
from ap_recon.schemas.claim import ClaimCreate, ClaimOut, ClaimSubmissionOut, PolicyValidationOut
from ap_recon.services.claims import submit_claim

router = APIRouter()


def _submission(body: ClaimCreate) -> ClaimSubmission:
    return ClaimSubmission(
        employee_id=body.employee_id,
        category=body.category,
        amount=body.amount,
        claim_date=body.claim_date,
        merchant_name=body.merchant_name,
        description=body.description,
        receipt_url=body.receipt_url,
        receipt_file_id=body.receipt_file_id,
        charge_to_tenant_id=body.charge_to_tenant_id,
        metadata=body.metadata,
    )


def _validation_out(result: PolicyValidationResult) -> PolicyValidationOut:
    return PolicyValidationOut(
        passed=result.passed,
        errors=result.errors,
        warnings=result.warnings,
        auto_approve=result.auto_approve,
    )


# ─── POST /claims/validate ───

@router.post("/validate", response_model=PolicyValidationOut, summary="Dry-run the claim policy gate")
async def validate(
    body: ClaimCreate,
    db: Annotated[AsyncSession, Depends(get_session)],
    tenant_id: TenantId,
):
    result = await db.run_sync(
        validate_claim, _submission(body), PolicyContext(home_tenant_id=tenant_id)
    )
    return _validation_out(result)


# ─── POST /claims ───

@router.post(
    "",
    response_model=ClaimSubmissionOut,
    status_code=status.HTTP_201_CREATED,
    summary="Submit a claim; blocked claims return every violated rule",
)
async def create_claim(
    body: ClaimCreate,
    db: Annotated[AsyncSession, Depends(get_session)],
    tenant_id: TenantId,
    meta: Meta,
):
    result = await db.run_sync(
        submit_claim,
        _submission(body),
        context=PolicyContext(home_tenant_id=tenant_id, user_id=body.employee_id),
        request_meta=meta,
    )
    if not result.accepted:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=_validation_out(result.validation).model_dump(),
        )
    await db.commit()
    return ClaimSubmissionOut(
        claim=ClaimOut.model_validate(result.claim),
        validation=_validation_out(result.validation),
    )
