"""Typed errors raised by the reconciliation core.

Validation outcomes (policy gate, auto-approval criteria) and audit chain
breaks are returned as data, not raised. Only conditions that make the
current call meaningless are exceptions.
"""


class ReconError(Exception):
    """Base class for all reconciliation errors."""

    code: str = "RECON_ERROR"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class NotFoundError(ReconError, LookupError):
    """A referenced document or record does not exist."""

    code = "NOT_FOUND"

    def __init__(self, entity: str, entity_id):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")


class InvalidStateError(ReconError, ValueError):
    """The requested transition is not allowed from the current state."""

    code = "INVALID_STATE"

    def __init__(self, entity: str, entity_id, current: str | None, attempted: str):
        self.entity = entity
        self.entity_id = entity_id
        self.current = current
        self.attempted = attempted
        super().__init__(
            f"Cannot {attempted} {entity} {entity_id}: current state is {current!r}"
        )


class AuditWriteError(ReconError):
    """The audit ledger could not append a record for an entity."""

    code = "AUDIT_WRITE_FAILED"

    def __init__(self, entity_type: str, entity_id: str, attempts: int):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.attempts = attempts
        super().__init__(
            f"Audit append for {entity_type}/{entity_id} failed after {attempts} attempts"
        )


class ImmutableRecordError(ReconError):
    """An attempt was made to modify or delete an append-only audit record."""

    code = "IMMUTABLE_RECORD"

    def __init__(self, record_id, operation: str):
        self.record_id = record_id
        self.operation = operation
        super().__init__(f"Audit record {record_id} is append-only; {operation} refused")
