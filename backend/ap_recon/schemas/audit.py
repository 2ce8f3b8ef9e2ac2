"""Pydantic schemas for the audit ledger."""
import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict


class AuditRecordOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    tenant_id: uuid.UUID | None
    entity_type: str
    entity_id: str
    action: str
    actor_id: str
    old_state: Any | None
    new_state: Any | None
    changes: Any | None
    content_hash: str
    previous_hash: str | None
    sequence: int
    proof_timestamp: datetime
    workflow_stage: str | None
    workflow_state: Any | None
    ip_address: str | None
    user_agent: str | None
    request_id: str | None


class BrokenLinkOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    record_id: uuid.UUID
    sequence: int
    reasons: list[str]


class ChainVerificationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    entity_type: str
    entity_id: str
    valid: bool
    records_checked: int
    broken_records: list[BrokenLinkOut]
