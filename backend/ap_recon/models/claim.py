import uuid
from datetime import date

from sqlalchemy import Boolean, Date, ForeignKey, JSON, Numeric, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from ap_recon.db.base import Base, TimestampMixin, UUIDMixin


CLAIM_STATUSES = (
    "draft",
    "submitted",
    "pending_approval",
    "approved",
    "rejected",
    "paid",
    "cancelled",
)


class EmployeeClaim(Base, UUIDMixin, TimestampMixin):
    __tablename__ = "employee_claims"

    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False, index=True)  # submitter's home tenant
    employee_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False, index=True)
    charge_to_tenant_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True, index=True)
    category: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    amount: Mapped[float] = mapped_column(Numeric(18, 4), nullable=False)
    merchant_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    claim_date: Mapped[date] = mapped_column(Date, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    receipt_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    receipt_file_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    claim_metadata: Mapped[dict] = mapped_column("metadata", JSON, nullable=False, default=dict)
    status: Mapped[str] = mapped_column(String(30), nullable=False, default="submitted")
    auto_approved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    invoice_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("invoices.id"), nullable=True
    )


class TenantAccess(Base, UUIDMixin, TimestampMixin):
    """Grant allowing a user to charge expenses to a tenant other than their own."""

    __tablename__ = "tenant_access"
    __table_args__ = (UniqueConstraint("user_id", "tenant_id", name="uq_tenant_access_user_tenant"),)

    user_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False, index=True)
    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    granted_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
