import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from ap_recon.core.clock import utcnow
from ap_recon.db.base import Base, TimestampMixin, UUIDMixin


STALENESS_LEVELS = ("warning", "critical", "severe")


class InvoiceStaleness(Base, UUIDMixin, TimestampMixin):
    """Tracking row for an invoice that has gone quiet; one per invoice."""

    __tablename__ = "invoice_staleness"

    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False, index=True)
    invoice_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("invoices.id"), nullable=False, unique=True
    )
    current_status: Mapped[str] = mapped_column(String(50), nullable=False)
    days_since_update: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    staleness_level: Mapped[str] = mapped_column(String(20), nullable=False)  # warning, critical, severe
    last_status_change: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expected_action: Mapped[str | None] = mapped_column(Text, nullable=True)
    detected_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    notification_sent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    notification_sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    resolved_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolution_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
