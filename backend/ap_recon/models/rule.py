import uuid

from sqlalchemy import Boolean, ForeignKey, JSON, Numeric, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from ap_recon.db.base import Base, TimestampMixin, UUIDMixin


class AutoApprovalRule(Base, UUIDMixin, TimestampMixin):
    """Threshold set that authorises unattended approval of a match."""

    __tablename__ = "auto_approval_rules"

    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    rule_type: Mapped[str] = mapped_column(String(50), nullable=False, default="three_way_match")
    matching_score_threshold: Mapped[float] = mapped_column(Numeric(5, 2), nullable=False, default=95)
    variance_threshold: Mapped[float] = mapped_column(Numeric(18, 4), nullable=False, default=0)
    auto_approve: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    auto_approve_by: Mapped[str | None] = mapped_column(String(100), nullable=True)  # actor recorded on approval
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class AutoApprovalLog(Base, UUIDMixin, TimestampMixin):
    """One row per unattended approval, with the criteria that allowed it."""

    __tablename__ = "auto_approval_logs"

    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False, index=True)
    rule_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("auto_approval_rules.id"), nullable=False, index=True
    )
    invoice_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("invoices.id"), nullable=False, index=True
    )
    match_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("three_way_matches.id"), nullable=False
    )
    matching_score: Mapped[float] = mapped_column(Numeric(5, 2), nullable=False)
    variance_amount: Mapped[float] = mapped_column(Numeric(18, 4), nullable=False)
    criteria_met: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    approved_by: Mapped[str] = mapped_column(String(100), nullable=False)
    audit_record_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("audit_records.id"), nullable=True
    )
