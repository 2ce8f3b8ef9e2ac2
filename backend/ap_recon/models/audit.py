import uuid
from datetime import datetime

from sqlalchemy import DateTime, Index, Integer, JSON, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from ap_recon.db.base import Base, TimestampMixin, UUIDMixin


class AuditRecord(Base, UUIDMixin, TimestampMixin):
    """Append-only, hash-chained audit trail entry.

    Records are chained per (entity_type, entity_id): ``sequence`` is the
    1-based position in that entity's chain and ``previous_hash`` is the
    ``content_hash`` of the record at ``sequence - 1``.
    """

    __tablename__ = "audit_records"
    __table_args__ = (
        UniqueConstraint("entity_type", "entity_id", "sequence", name="uq_audit_records_chain_position"),
        Index("ix_audit_records_entity_proof", "entity_type", "entity_id", "proof_timestamp"),
    )

    tenant_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True, index=True)
    entity_type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    actor_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    old_state: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    new_state: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    changes: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    previous_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)  # null only at sequence 1
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    proof_timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    workflow_stage: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    workflow_state: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(50), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(500), nullable=True)
    request_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
