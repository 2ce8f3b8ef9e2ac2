import uuid
from typing import Any

from sqlalchemy import JSON, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from ap_recon.db.base import Base, TimestampMixin, UUIDMixin


# Lowest priority first; later scopes override earlier ones.
CONFIG_SCOPES = (
    "portal_global",
    "tenant",
    "tenant_user_admin",
    "tenant_user_personal",
)


class ConfigLayer(Base, UUIDMixin, TimestampMixin):
    """One configuration value at one scope of the priority chain."""

    __tablename__ = "config_layers"
    __table_args__ = (
        UniqueConstraint("scope", "tenant_id", "user_id", "key", name="uq_config_layers_scope_key"),
    )

    scope: Mapped[str] = mapped_column(String(30), nullable=False)
    tenant_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True, index=True)
    user_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    key: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    value: Mapped[Any] = mapped_column(JSON, nullable=True)
