"""Pydantic schemas for invoice status changes."""
import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, field_validator

from ap_recon.models.invoice import INVOICE_STATUSES


class InvoiceStatusUpdate(BaseModel):
    status: str
    notes: str | None = None
    expected_next_step: str | None = None

    @field_validator("status")
    @classmethod
    def known_status(cls, v: str) -> str:
        if v not in INVOICE_STATUSES:
            raise ValueError(f"status must be one of: {', '.join(INVOICE_STATUSES)}")
        return v


class InvoiceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    tenant_id: uuid.UUID
    invoice_number: str | None
    amount: float | None
    currency: str
    status: str
    status_changed_at: datetime | None
    expected_next_step: str | None
    expected_payment_date: datetime | None
