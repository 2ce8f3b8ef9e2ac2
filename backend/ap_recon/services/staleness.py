"""Invoice staleness detection — silence on an open invoice is itself a defect.

An invoice is stale when it has not changed status for N days and nothing
else has touched it inside the warning window: no status-timeline entry, no
audit record against the invoice, no notification about it. Tiers are
warning (3d), critical (7d) and severe (14d) by default.

One InvoiceStaleness row exists per invoice. An "episode" is identified by
the invoice's last status change; when that advances, the row's
notification flag and resolution fields are reset. Critical and severe
episodes notify exactly once.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ap_recon.core.clock import as_utc, days_between, utcnow
from ap_recon.core.config import settings
from ap_recon.core.exceptions import InvalidStateError, NotFoundError
from ap_recon.db.upsert import insert_or_get, row_snapshot
from ap_recon.models.audit import AuditRecord
from ap_recon.models.invoice import TERMINAL_INVOICE_STATUSES, Invoice, InvoiceStatusTimeline
from ap_recon.models.notification import Notification
from ap_recon.models.staleness import STALENESS_LEVELS, InvoiceStaleness
from ap_recon.services import audit as audit_svc
from ap_recon.services.config_resolver import DetectionThresholds, detection_thresholds
from ap_recon.services.invoice_status import expected_next_step_for
from ap_recon.services.notifications import DatabaseNotificationSender, NotificationSender

logger = logging.getLogger(__name__)

STALENESS_NOTIFICATION_TYPE = "staleness_alert"
NOTIFY_LEVELS = ("critical", "severe")


@dataclass
class StalenessFinding:
    invoice_id: uuid.UUID
    tenant_id: uuid.UUID
    current_status: str
    days_since_update: int
    staleness_level: str
    last_status_change: datetime
    expected_action: str


# ─── Classification helpers ───

def classify_staleness(days: int, thresholds: DetectionThresholds | None = None) -> str | None:
    warning = thresholds.staleness_warning_days if thresholds else settings.STALENESS_WARNING_DAYS
    critical = thresholds.staleness_critical_days if thresholds else settings.STALENESS_CRITICAL_DAYS
    severe = thresholds.staleness_severe_days if thresholds else settings.STALENESS_SEVERE_DAYS

    if days >= severe:
        return "severe"
    if days >= critical:
        return "critical"
    if days >= warning:
        return "warning"
    return None


def expected_action(status: str, expected_next_step: str | None = None) -> str:
    return expected_next_step or expected_next_step_for(status)


def staleness_message(level: str, days: int, action: str | None) -> str:
    message = f"Invoice has not been updated in {days} days."
    if level == "critical":
        message += " Action required."
    elif level == "severe":
        message += " Urgent action required."
    if action:
        message += f" Expected: {action}"
    return message


def last_change_of(invoice: Invoice) -> datetime:
    """Later of the invoice's last status change and last update."""
    candidates = [as_utc(ts) for ts in (invoice.status_changed_at, invoice.updated_at) if ts is not None]
    return max(candidates) if candidates else as_utc(invoice.created_at)


# ─── Activity sources ───

def has_recent_activity(db: Session, invoice: Invoice, since: datetime) -> bool:
    """Any timeline entry, invoice audit record or notification since ``since``.

    Staleness alerts themselves are not activity.
    """
    timeline = db.execute(
        select(InvoiceStatusTimeline.id).where(
            InvoiceStatusTimeline.invoice_id == invoice.id,
            InvoiceStatusTimeline.changed_at >= since,
        ).limit(1)
    ).first()
    if timeline is not None:
        return True

    audited = db.execute(
        select(AuditRecord.id).where(
            AuditRecord.entity_type == "invoice",
            AuditRecord.entity_id == str(invoice.id),
            AuditRecord.proof_timestamp >= since,
        ).limit(1)
    ).first()
    if audited is not None:
        return True

    notified = db.execute(
        select(Notification.id).where(
            Notification.related_entity_type == "invoice",
            Notification.related_entity_id == str(invoice.id),
            Notification.notification_type != STALENESS_NOTIFICATION_TYPE,
            Notification.created_at >= since,
        ).limit(1)
    ).first()
    return notified is not None


# ─── Detection ───

def detect_staleness(
    db: Session,
    tenant_id: uuid.UUID,
    *,
    now: datetime | None = None,
    thresholds: DetectionThresholds | None = None,
) -> list[StalenessFinding]:
    """Classify every non-terminal invoice of a tenant. Read-only."""
    now = as_utc(now) if now else utcnow()
    thresholds = thresholds or detection_thresholds(db, tenant_id)
    window_start = now - timedelta(days=thresholds.staleness_warning_days)

    invoices = db.execute(
        select(Invoice).where(
            Invoice.tenant_id == tenant_id,
            Invoice.status.notin_(TERMINAL_INVOICE_STATUSES),
        ).order_by(Invoice.created_at)
    ).scalars().all()

    findings: list[StalenessFinding] = []
    for invoice in invoices:
        last_change = last_change_of(invoice)
        days = days_between(last_change, now)
        level = classify_staleness(days, thresholds)
        if level is None:
            continue
        if has_recent_activity(db, invoice, since=window_start):
            logger.debug("Invoice %s is %d days old but has recent activity", invoice.id, days)
            continue

        findings.append(StalenessFinding(
            invoice_id=invoice.id,
            tenant_id=invoice.tenant_id,
            current_status=invoice.status,
            days_since_update=days,
            staleness_level=level,
            last_status_change=last_change,
            expected_action=expected_action(invoice.status, invoice.expected_next_step),
        ))
    return findings


def _notify(
    db: Session,
    record: InvoiceStaleness,
    sender: NotificationSender,
    actor: str,
    request_meta: audit_svc.RequestMeta | None,
    now: datetime,
) -> bool:
    """Send the one notification of this episode; False if the sender failed."""
    level = record.staleness_level
    try:
        with db.begin_nested():
            sender.send(
                tenant_id=record.tenant_id,
                recipient="vendor",
                notification_type=STALENESS_NOTIFICATION_TYPE,
                title=f"Invoice Staleness Alert - {level.upper()}",
                message=staleness_message(level, record.days_since_update, record.expected_action),
                related_entity=("invoice", str(record.invoice_id)),
                priority="high" if level == "severe" else "normal",
            )
    except Exception as exc:
        # Flag stays unset so the next scan retries.
        logger.warning("Staleness notification for invoice %s failed: %s", record.invoice_id, exc)
        return False

    before = row_snapshot(record)
    record.notification_sent = True
    record.notification_sent_at = now
    db.flush()

    audit_svc.append(
        db,
        entity_type="invoice_staleness",
        entity_id=record.id,
        action="notify",
        actor_id=actor,
        tenant_id=record.tenant_id,
        old_state=before,
        new_state=row_snapshot(record),
        workflow_stage=level,
        workflow_state={"invoice_id": str(record.invoice_id), "recipient": "vendor"},
        request_meta=request_meta,
    )
    return True


def detect_and_record(
    db: Session,
    tenant_id: uuid.UUID,
    *,
    sender: NotificationSender | None = None,
    actor_id: str | None = None,
    request_meta: audit_svc.RequestMeta | None = None,
    now: datetime | None = None,
) -> list[InvoiceStaleness]:
    """Upsert a staleness row per stale invoice and notify critical/severe ones.

    A row that a reviewer resolved stays resolved until the invoice's last
    status change advances. Returns the rows written this cycle.
    """
    now = as_utc(now) if now else utcnow()
    actor = actor_id or settings.SYSTEM_ACTOR
    sender = sender or DatabaseNotificationSender(db)
    written: list[InvoiceStaleness] = []

    for finding in detect_staleness(db, tenant_id, now=now):
        values = {
            "tenant_id": finding.tenant_id,
            "current_status": finding.current_status,
            "days_since_update": finding.days_since_update,
            "staleness_level": finding.staleness_level,
            "last_status_change": finding.last_status_change,
            "expected_action": finding.expected_action,
            "detected_at": now,
        }
        record, created = insert_or_get(db, InvoiceStaleness, {"invoice_id": finding.invoice_id}, values)

        if created:
            action, before = "detect", None
        else:
            new_episode = as_utc(record.last_status_change) != finding.last_status_change
            if record.is_resolved and not new_episode:
                continue
            before = row_snapshot(record)
            if new_episode:
                action = "detect"
                values.update(
                    notification_sent=False,
                    notification_sent_at=None,
                    is_resolved=False,
                    resolved_by=None,
                    resolved_at=None,
                    resolution_notes=None,
                )
            elif record.staleness_level != finding.staleness_level:
                action = "escalate"
            else:
                action = "refresh"
            for column, value in values.items():
                setattr(record, column, value)
            db.flush()

        audit_svc.append(
            db,
            entity_type="invoice_staleness",
            entity_id=record.id,
            action=action,
            actor_id=actor,
            tenant_id=record.tenant_id,
            old_state=before,
            new_state=row_snapshot(record),
            workflow_stage=record.staleness_level,
            workflow_state={"invoice_id": str(record.invoice_id), "days_since_update": record.days_since_update},
            request_meta=request_meta,
        )

        if record.staleness_level in NOTIFY_LEVELS and not record.notification_sent:
            _notify(db, record, sender, actor, request_meta, now)

        if action != "refresh":
            logger.info(
                "Staleness %s: invoice=%s level=%s days=%d",
                action, record.invoice_id, record.staleness_level, record.days_since_update,
            )
        written.append(record)

    return written


# ─── Reviewer actions / reads ───

def resolve_staleness(
    db: Session,
    staleness_id: uuid.UUID,
    resolved_by: str,
    notes: str | None = None,
    *,
    tenant_id: uuid.UUID | None = None,
    request_meta: audit_svc.RequestMeta | None = None,
) -> InvoiceStaleness:
    stmt = select(InvoiceStaleness).where(InvoiceStaleness.id == staleness_id)
    if tenant_id is not None:
        stmt = stmt.where(InvoiceStaleness.tenant_id == tenant_id)
    record = db.execute(stmt).scalars().first()
    if record is None:
        raise NotFoundError("InvoiceStaleness", staleness_id)
    if record.is_resolved:
        raise InvalidStateError("InvoiceStaleness", staleness_id, "resolved", "resolve")

    before = row_snapshot(record)
    record.is_resolved = True
    record.resolved_by = resolved_by
    record.resolved_at = utcnow()
    record.resolution_notes = notes
    db.flush()

    audit_svc.append(
        db,
        entity_type="invoice_staleness",
        entity_id=record.id,
        action="resolve",
        actor_id=resolved_by,
        tenant_id=record.tenant_id,
        old_state=before,
        new_state=row_snapshot(record),
        workflow_stage="resolved",
        workflow_state={"invoice_id": str(record.invoice_id), "notes": notes},
        request_meta=request_meta,
    )
    return record


def list_staleness(
    db: Session,
    tenant_id: uuid.UUID,
    *,
    level: str | None = None,
    include_resolved: bool = False,
    limit: int = 100,
) -> list[InvoiceStaleness]:
    stmt = select(InvoiceStaleness).where(InvoiceStaleness.tenant_id == tenant_id)
    if level:
        stmt = stmt.where(InvoiceStaleness.staleness_level == level)
    if not include_resolved:
        stmt = stmt.where(InvoiceStaleness.is_resolved.is_(False))
    stmt = stmt.order_by(InvoiceStaleness.days_since_update.desc()).limit(limit)
    return list(db.execute(stmt).scalars().all())


def staleness_summary(db: Session, tenant_id: uuid.UUID) -> dict:
    rows = db.execute(
        select(
            InvoiceStaleness.staleness_level,
            InvoiceStaleness.notification_sent,
            func.count(InvoiceStaleness.id),
        )
        .where(InvoiceStaleness.tenant_id == tenant_id, InvoiceStaleness.is_resolved.is_(False))
        .group_by(InvoiceStaleness.staleness_level, InvoiceStaleness.notification_sent)
    ).all()

    summary = {level: 0 for level in STALENESS_LEVELS}
    summary.update(notifications_sent=0, notifications_pending=0)
    for level, sent, count in rows:
        summary[level] = summary.get(level, 0) + count
        if sent:
            summary["notifications_sent"] += count
        elif level in NOTIFY_LEVELS:
            summary["notifications_pending"] += count
    summary["total"] = sum(summary[level] for level in STALENESS_LEVELS)
    return summary
