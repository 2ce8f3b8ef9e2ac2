"""Pydantic schemas for employee claims."""
import uuid
from datetime import date, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ClaimCreate(BaseModel):
    employee_id: uuid.UUID
    category: str
    amount: float
    claim_date: date
    merchant_name: str | None = None
    description: str | None = None
    receipt_url: str | None = None
    receipt_file_id: str | None = None
    charge_to_tenant_id: uuid.UUID | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("category")
    @classmethod
    def normalise_category(cls, v: str) -> str:
        return v.strip().upper()


class PolicyValidationOut(BaseModel):
    passed: bool
    errors: list[str]
    warnings: list[str]
    auto_approve: bool


class ClaimOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    tenant_id: uuid.UUID
    employee_id: uuid.UUID
    charge_to_tenant_id: uuid.UUID | None
    category: str
    amount: float
    merchant_name: str | None
    claim_date: date
    status: str
    auto_approved: bool
    invoice_id: uuid.UUID | None
    created_at: datetime


class ClaimSubmissionOut(BaseModel):
    claim: ClaimOut
    validation: PolicyValidationOut
