"""ORM-level append-only enforcement for the audit ledger.

The migration revokes UPDATE/DELETE on ``audit_records`` at the database
level; these listeners refuse the same operations when they go through the
ORM unit of work, so application code fails fast before any SQL is sent.
"""
import logging

from sqlalchemy import event

from ap_recon.core.exceptions import ImmutableRecordError

logger = logging.getLogger(__name__)

_registered = False


def _refuse_update(mapper, connection, target):
    logger.error("Refused update of audit record %s", target.id)
    raise ImmutableRecordError(target.id, "update")


def _refuse_delete(mapper, connection, target):
    logger.error("Refused delete of audit record %s", target.id)
    raise ImmutableRecordError(target.id, "delete")


def register_immutability_listeners() -> None:
    """Attach the listeners once per process."""
    global _registered
    if _registered:
        return

    from ap_recon.models.audit import AuditRecord

    event.listen(AuditRecord, "before_update", _refuse_update)
    event.listen(AuditRecord, "before_delete", _refuse_delete)
    _registered = True


def unregister_immutability_listeners() -> None:
    global _registered
    if not _registered:
        return

    from ap_recon.models.audit import AuditRecord

    event.remove(AuditRecord, "before_update", _refuse_update)
    event.remove(AuditRecord, "before_delete", _refuse_delete)
    _registered = False
