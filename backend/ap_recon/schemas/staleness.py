"""Pydantic schemas for invoice staleness tracking."""
import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict


class InvoiceStalenessOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    tenant_id: uuid.UUID
    invoice_id: uuid.UUID
    current_status: str
    days_since_update: int
    staleness_level: str  # warning, critical, severe
    last_status_change: datetime
    expected_action: str | None
    detected_at: datetime
    notification_sent: bool
    notification_sent_at: datetime | None
    is_resolved: bool
    resolved_by: str | None
    resolved_at: datetime | None
    resolution_notes: str | None


class StalenessResolveRequest(BaseModel):
    notes: str | None = None


class StalenessSummaryOut(BaseModel):
    warning: int
    critical: int
    severe: int
    total: int
    notifications_sent: int
    notifications_pending: int
