"""Audit ledger: append-only, hash-chained writes to the audit_records table.

Each tracked entity (entity_type, entity_id) owns its own chain. A record's
content_hash is SHA-256 over a canonical (sorted-key, compact) JSON rendering
of its content plus its proof timestamp; its previous_hash is the
content_hash of the record before it in the same chain.

Appends go through the caller's session and only flush, so the audited
mutation and its record commit or roll back together.
"""
import hashlib
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ap_recon.core.clock import as_utc, utcnow
from ap_recon.core.config import settings
from ap_recon.core.exceptions import AuditWriteError, NotFoundError
from ap_recon.models.audit import AuditRecord

logger = logging.getLogger(__name__)

PROOF_TICK = timedelta(microseconds=1)


# ─── Request metadata / result types ───

@dataclass(frozen=True)
class RequestMeta:
    ip_address: str | None = None
    user_agent: str | None = None
    request_id: str | None = None


@dataclass
class BrokenLink:
    record_id: uuid.UUID
    sequence: int
    reasons: list[str]


@dataclass
class ChainVerification:
    entity_type: str
    entity_id: str
    valid: bool
    records_checked: int
    broken_records: list[BrokenLink] = field(default_factory=list)

    @property
    def first_broken(self) -> BrokenLink | None:
        return self.broken_records[0] if self.broken_records else None


@dataclass
class AuditSearchFilters:
    tenant_id: uuid.UUID | None = None
    entity_type: str | None = None
    entity_id: str | None = None
    action: str | None = None
    actor_id: str | None = None
    workflow_stage: str | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    limit: int = 100


# ─── Canonical serialisation ───

def _json_default(obj: Any) -> Any:
    if isinstance(obj, Decimal):
        return float(obj)
    if isinstance(obj, datetime):
        return as_utc(obj).isoformat()
    if isinstance(obj, date):
        return obj.isoformat()
    if isinstance(obj, uuid.UUID):
        return str(obj)
    if isinstance(obj, (set, frozenset)):
        return sorted(obj)
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def canonical_json(data: Any) -> str:
    return json.dumps(
        data,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=_json_default,
    )


def normalise_state(state: Any) -> Any:
    """Round-trip through JSON so the stored value equals the hashed value."""
    if state is None:
        return None
    return json.loads(canonical_json(state))


def diff_states(old: dict | None, new: dict | None) -> dict[str, dict[str, Any]]:
    """Field-level {"field": {"from": x, "to": y}} diff of two snapshots."""
    old = old or {}
    new = new or {}
    return {
        key: {"from": old.get(key), "to": new.get(key)}
        for key in sorted(set(old) | set(new))
        if old.get(key) != new.get(key)
    }


def compute_content_hash(
    *,
    entity_type: str,
    entity_id: str,
    action: str,
    actor_id: str,
    tenant_id: uuid.UUID | str | None,
    old_state: Any,
    new_state: Any,
    changes: Any,
    workflow_stage: str | None,
    workflow_state: Any,
    proof_timestamp: datetime,
) -> str:
    payload = {
        "entity_type": entity_type,
        "entity_id": str(entity_id),
        "action": action,
        "actor_id": actor_id,
        "tenant_id": str(tenant_id) if tenant_id else None,
        "old_state": old_state,
        "new_state": new_state,
        "changes": changes,
        "workflow_stage": workflow_stage,
        "workflow_state": workflow_state,
        "proof_timestamp": as_utc(proof_timestamp).isoformat(),
    }
    return hashlib.sha256(canonical_json(payload).encode("utf-8")).hexdigest()


def _hash_of(record: AuditRecord) -> str:
    return compute_content_hash(
        entity_type=record.entity_type,
        entity_id=record.entity_id,
        action=record.action,
        actor_id=record.actor_id,
        tenant_id=record.tenant_id,
        old_state=record.old_state,
        new_state=record.new_state,
        changes=record.changes,
        workflow_stage=record.workflow_stage,
        workflow_state=record.workflow_state,
        proof_timestamp=record.proof_timestamp,
    )


# ─── Append ───

def _chain_tail(db: Session, entity_type: str, entity_id: str) -> AuditRecord | None:
    stmt = (
        select(AuditRecord)
        .where(AuditRecord.entity_type == entity_type, AuditRecord.entity_id == entity_id)
        .order_by(AuditRecord.sequence.desc())
        .limit(1)
    )
    return db.execute(stmt).scalars().first()


def _next_proof_timestamp(tail: AuditRecord | None) -> datetime:
    now = utcnow()
    if tail is None:
        return now
    previous = as_utc(tail.proof_timestamp)
    return now if now > previous else previous + PROOF_TICK


def append(
    db: Session,
    *,
    entity_type: str,
    entity_id: uuid.UUID | str,
    action: str,
    actor_id: str | None = None,
    tenant_id: uuid.UUID | None = None,
    old_state: Any | None = None,
    new_state: Any | None = None,
    changes: Any | None = None,
    workflow_stage: str | None = None,
    workflow_state: Any | None = None,
    request_meta: RequestMeta | None = None,
) -> AuditRecord:
    """Append one record to the chain of (entity_type, entity_id).

    When ``changes`` is omitted and both snapshots are given, the field-level
    diff is computed. Raises AuditWriteError if the chain tail keeps moving
    under concurrent writers; any other datastore error propagates.
    """
    entity_id = str(entity_id)
    actor = str(actor_id) if actor_id else settings.SYSTEM_ACTOR
    old_state = normalise_state(old_state)
    new_state = normalise_state(new_state)
    if changes is None and old_state is not None and new_state is not None:
        changes = diff_states(old_state, new_state)
    changes = normalise_state(changes)
    workflow_state = normalise_state(workflow_state)
    meta = request_meta or RequestMeta()

    attempts = max(1, settings.AUDIT_APPEND_MAX_RETRIES)
    for attempt in range(1, attempts + 1):
        tail = _chain_tail(db, entity_type, entity_id)
        proof_timestamp = _next_proof_timestamp(tail)
        record = AuditRecord(
            tenant_id=tenant_id,
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            actor_id=actor,
            old_state=old_state,
            new_state=new_state,
            changes=changes,
            workflow_stage=workflow_stage,
            workflow_state=workflow_state,
            sequence=tail.sequence + 1 if tail else 1,
            previous_hash=tail.content_hash if tail else None,
            proof_timestamp=proof_timestamp,
            ip_address=meta.ip_address,
            user_agent=meta.user_agent,
            request_id=meta.request_id,
        )
        record.content_hash = compute_content_hash(
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            actor_id=actor,
            tenant_id=tenant_id,
            old_state=old_state,
            new_state=new_state,
            changes=changes,
            workflow_stage=workflow_stage,
            workflow_state=workflow_state,
            proof_timestamp=proof_timestamp,
        )
        try:
            with db.begin_nested():
                db.add(record)
                db.flush()  # get id without committing; caller controls the transaction
        except IntegrityError:
            logger.warning(
                "Audit chain tail moved for %s/%s (attempt %d/%d); retrying",
                entity_type, entity_id, attempt, attempts,
            )
            continue

        logger.debug("Audit: %s %s/%s seq=%d", action, entity_type, entity_id, record.sequence)
        return record

    raise AuditWriteError(entity_type, entity_id, attempts)


# ─── Reads ───

def get_by_entity(db: Session, entity_type: str, entity_id: uuid.UUID | str) -> list[AuditRecord]:
    """Full chain for one entity, oldest first."""
    stmt = (
        select(AuditRecord)
        .where(AuditRecord.entity_type == entity_type, AuditRecord.entity_id == str(entity_id))
        .order_by(AuditRecord.sequence.asc())
    )
    return list(db.execute(stmt).scalars().all())


def search(db: Session, filters: AuditSearchFilters) -> list[AuditRecord]:
    """Filtered records across entities, newest first."""
    stmt = select(AuditRecord)

    if filters.tenant_id:
        stmt = stmt.where(AuditRecord.tenant_id == filters.tenant_id)
    if filters.entity_type:
        stmt = stmt.where(AuditRecord.entity_type == filters.entity_type)
    if filters.entity_id:
        stmt = stmt.where(AuditRecord.entity_id == str(filters.entity_id))
    if filters.action:
        stmt = stmt.where(AuditRecord.action == filters.action)
    if filters.actor_id:
        stmt = stmt.where(AuditRecord.actor_id == filters.actor_id)
    if filters.workflow_stage:
        stmt = stmt.where(AuditRecord.workflow_stage == filters.workflow_stage)
    if filters.start_date:
        stmt = stmt.where(AuditRecord.proof_timestamp >= filters.start_date)
    if filters.end_date:
        stmt = stmt.where(AuditRecord.proof_timestamp <= filters.end_date)

    stmt = stmt.order_by(AuditRecord.proof_timestamp.desc()).limit(filters.limit)
    return list(db.execute(stmt).scalars().all())


# ─── Verification ───

def verify_integrity(
    db: Session,
    entity_type: str,
    entity_id: uuid.UUID | str,
    *,
    tenant_id: uuid.UUID | None = None,
) -> ChainVerification:
    """Walk the whole chain of one entity and report every broken record.

    Checks, per record: the stored content hash matches a recomputation;
    the first record has no predecessor and starts at sequence 1; every
    later record links to the prior record's content hash, continues its
    sequence without a gap and carries a later proof timestamp.
    Nothing is repaired. With ``tenant_id``, a chain holding another
    tenant's records is reported as not found.
    """
    records = get_by_entity(db, entity_type, entity_id)
    if tenant_id is not None and any(r.tenant_id not in (None, tenant_id) for r in records):
        raise NotFoundError("AuditChain", f"{entity_type}/{entity_id}")
    broken: list[BrokenLink] = []
    prior: AuditRecord | None = None

    for record in records:
        reasons: list[str] = []

        if _hash_of(record) != record.content_hash:
            reasons.append("content_hash_mismatch")

        if prior is None:
            if record.sequence != 1 or record.previous_hash is not None:
                reasons.append("missing_predecessor")
        else:
            if record.previous_hash != prior.content_hash:
                reasons.append("previous_hash_mismatch")
            if record.sequence != prior.sequence + 1:
                reasons.append("sequence_gap")
            if as_utc(record.proof_timestamp) <= as_utc(prior.proof_timestamp):
                reasons.append("timestamp_out_of_order")

        if reasons:
            broken.append(BrokenLink(record_id=record.id, sequence=record.sequence, reasons=reasons))
        prior = record

    result = ChainVerification(
        entity_type=entity_type,
        entity_id=str(entity_id),
        valid=not broken,
        records_checked=len(records),
        broken_records=broken,
    )
    if broken:
        logger.warning(
            "Audit chain for %s/%s has %d broken record(s); first at seq=%d (%s)",
            entity_type, entity_id, len(broken), broken[0].sequence, ",".join(broken[0].reasons),
        )
    return result
