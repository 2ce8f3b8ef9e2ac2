import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Numeric, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from ap_recon.db.base import Base, TimestampMixin, UUIDMixin


MATCHING_STATUSES = ("pending", "matched", "partial", "mismatch", "disputed")
APPROVAL_STATUSES = ("pending", "approved", "rejected")


class ThreeWayMatch(Base, UUIDMixin, TimestampMixin):
    """Reconciliation of one (purchase order, goods receipt, invoice) triple."""

    __tablename__ = "three_way_matches"
    __table_args__ = (
        UniqueConstraint(
            "purchase_order_id", "goods_receipt_id", "invoice_id", "tenant_id",
            name="uq_three_way_matches_triple",
        ),
    )

    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False, index=True)
    purchase_order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("purchase_orders.id"), nullable=False, index=True
    )
    goods_receipt_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("goods_receipts.id"), nullable=False, index=True
    )
    invoice_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("invoices.id"), nullable=False, index=True
    )
    po_amount: Mapped[float] = mapped_column(Numeric(18, 4), nullable=False, default=0)
    grn_amount: Mapped[float] = mapped_column(Numeric(18, 4), nullable=False, default=0)
    invoice_amount: Mapped[float] = mapped_column(Numeric(18, 4), nullable=False, default=0)
    variance_amount: Mapped[float] = mapped_column(Numeric(18, 4), nullable=False, default=0)  # invoice - PO
    matching_score: Mapped[float] = mapped_column(Numeric(5, 2), nullable=False, default=0)  # 0-100
    matching_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="pending"
    )  # pending, matched, partial, mismatch, disputed
    approval_status: Mapped[str | None] = mapped_column(
        String(20), nullable=True, default="pending"
    )  # pending, approved, rejected
    approved_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rejected_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    rejected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    payment_eligible: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
