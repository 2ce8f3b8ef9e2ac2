"""Pydantic schemas for invoice exceptions."""
import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict


class InvoiceExceptionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    tenant_id: uuid.UUID
    invoice_id: uuid.UUID
    exception_type: str
    severity: str  # low, medium, high, critical
    status: str  # open, in_progress, resolved, ignored
    title: str
    description: str
    exception_data: dict[str, Any]
    detected_at: datetime
    resolved_by: str | None
    resolved_at: datetime | None
    resolution_notes: str | None


class ExceptionResolveRequest(BaseModel):
    notes: str | None = None


class ExceptionSummaryOut(BaseModel):
    total_open: int
    blocking: int
    needs_action: int
    safe: int
    by_type: dict[str, int]
    by_severity: dict[str, int]
