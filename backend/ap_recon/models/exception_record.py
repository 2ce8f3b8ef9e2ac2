import uuid
from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, JSON, String, Text, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column

from ap_recon.core.clock import utcnow
from ap_recon.db.base import Base, TimestampMixin, UUIDMixin


EXCEPTION_TYPES = (
    "missing_document",
    "variance_breach",
    "aging_threshold",
    "matching_failure",
    "approval_overdue",
    "payment_delayed",
    "invalid_data",
    "duplicate_detected",
)

SEVERITIES = ("low", "medium", "high", "critical")

EXCEPTION_STATUSES = ("open", "in_progress", "resolved", "ignored")


class InvoiceException(Base, UUIDMixin, TimestampMixin):
    __tablename__ = "invoice_exceptions"
    __table_args__ = (
        # At most one open exception per (invoice, type).
        Index(
            "uq_invoice_exceptions_open_type",
            "invoice_id",
            "exception_type",
            unique=True,
            postgresql_where=text("status = 'open'"),
            sqlite_where=text("status = 'open'"),
        ),
    )

    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False, index=True)
    invoice_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("invoices.id"), nullable=False, index=True
    )
    exception_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    severity: Mapped[str] = mapped_column(String(20), nullable=False, default="medium")  # low, medium, high, critical
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="open"
    )  # open, in_progress, resolved, ignored
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    exception_data: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    detected_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    resolved_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolution_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
