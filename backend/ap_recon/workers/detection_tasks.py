"""Celery tasks that drive the exception and staleness detectors.

The detectors own no schedule; beat invokes these. Each invoice (exception
scan) or tenant (staleness scan) is committed on its own, so one bad row
does not roll back the rest of the run.
"""
import logging
import uuid

from sqlalchemy import select

from ap_recon.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


def _tenant_ids(db, tenant_id: str | None) -> list[uuid.UUID]:
    from ap_recon.models.invoice import TERMINAL_INVOICE_STATUSES, Invoice

    if tenant_id:
        return [uuid.UUID(tenant_id)]
    return list(db.execute(
        select(Invoice.tenant_id)
        .where(Invoice.status.notin_(TERMINAL_INVOICE_STATUSES))
        .distinct()
    ).scalars().all())


@celery_app.task(name="ap_recon.workers.detection_tasks.scan_exceptions")
def scan_exceptions(tenant_id: str | None = None):
    """Run exception detection over every non-terminal invoice.

    Returns a stats dict: invoices scanned, exceptions opened, failures.
    """
    from ap_recon.db.session import SessionLocal
    from ap_recon.models.invoice import TERMINAL_INVOICE_STATUSES, Invoice
    from ap_recon.services.exception_detection import detect_and_record

    logger.info("scan_exceptions: starting (tenant=%s)", tenant_id or "all")
    stats = {"invoices": 0, "opened": 0, "failed": 0}

    with SessionLocal() as db:
        for tenant in _tenant_ids(db, tenant_id):
            invoice_ids = db.execute(
                select(Invoice.id).where(
                    Invoice.tenant_id == tenant,
                    Invoice.status.notin_(TERMINAL_INVOICE_STATUSES),
                )
            ).scalars().all()

            for invoice_id in invoice_ids:
                stats["invoices"] += 1
                try:
                    created = detect_and_record(db, invoice_id, tenant)
                    db.commit()
                    stats["opened"] += len(created)
                except Exception as exc:
                    db.rollback()
                    stats["failed"] += 1
                    logger.exception("scan_exceptions: invoice %s failed: %s", invoice_id, exc)

    logger.info(
        "scan_exceptions: complete — invoices=%d, opened=%d, failed=%d",
        stats["invoices"], stats["opened"], stats["failed"],
    )
    return stats


@celery_app.task(name="ap_recon.workers.detection_tasks.scan_staleness")
def scan_staleness(tenant_id: str | None = None):
    """Run the staleness detector per tenant and send due notifications."""
    from ap_recon.db.session import SessionLocal
    from ap_recon.services.staleness import detect_and_record

    logger.info("scan_staleness: starting (tenant=%s)", tenant_id or "all")
    stats = {"tenants": 0, "stale": 0, "notified": 0, "failed": 0}

    with SessionLocal() as db:
        for tenant in _tenant_ids(db, tenant_id):
            stats["tenants"] += 1
            try:
                records = detect_and_record(db, tenant)
                stats["stale"] += len(records)
                stats["notified"] += sum(1 for r in records if r.notification_sent)
                db.commit()
            except Exception as exc:
                db.rollback()
                stats["failed"] += 1
                logger.exception("scan_staleness: tenant %s failed: %s", tenant, exc)

    logger.info(
        "scan_staleness: complete — tenants=%d, stale=%d, notified=%d, failed=%d",
        stats["tenants"], stats["stale"], stats["notified"], stats["failed"],
    )
    return stats
