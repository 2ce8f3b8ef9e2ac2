"""Pydantic schemas for 3-way matching and auto-approval."""
import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, field_validator


class MatchRequest(BaseModel):
    purchase_order_id: uuid.UUID
    goods_receipt_id: uuid.UUID
    invoice_id: uuid.UUID


class MatchOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    tenant_id: uuid.UUID
    purchase_order_id: uuid.UUID
    goods_receipt_id: uuid.UUID
    invoice_id: uuid.UUID
    po_amount: float
    grn_amount: float
    invoice_amount: float
    variance_amount: float
    matching_score: float
    matching_status: str  # pending, matched, partial, mismatch, disputed
    approval_status: str | None  # pending, approved, rejected
    approved_by: str | None
    approved_at: datetime | None
    rejected_by: str | None
    rejected_at: datetime | None
    rejection_reason: str | None
    payment_eligible: bool
    created_at: datetime
    updated_at: datetime


class MatchRejectRequest(BaseModel):
    reason: str

    @field_validator("reason")
    @classmethod
    def reason_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("reason must not be blank")
        return v.strip()


class AutoApprovalOut(BaseModel):
    approved: bool
    reason: str
    rule_id: uuid.UUID | None = None
    match_id: uuid.UUID | None = None
    matching_score: float | None = None
    variance_amount: float | None = None
    criteria: dict[str, bool] = {}
