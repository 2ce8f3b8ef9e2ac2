"""Scalar configuration lookup over the layered config_layers table.

Layers, lowest priority first: portal_global, tenant, tenant_user_admin,
tenant_user_personal. The merge itself is the pure ``resolve`` function;
``get_value`` only loads the layers that apply to a tenant/user.
"""
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Iterable, Mapping

from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session

from ap_recon.core.config import settings
from ap_recon.models.config_layer import CONFIG_SCOPES, ConfigLayer

logger = logging.getLogger(__name__)


def resolve(sources: Iterable[Mapping[str, Any] | None]) -> dict[str, Any]:
    """Merge layers in order; later layers override earlier ones.

    ``None`` layers are absent scopes and are skipped. Keys whose value is
    ``None`` inside a layer do not override a lower layer.
    """
    merged: dict[str, Any] = {}
    for layer in sources:
        if not layer:
            continue
        for key, value in layer.items():
            if value is not None:
                merged[key] = value
    return merged


def load_layers(
    db: Session,
    tenant_id: uuid.UUID | None,
    user_id: uuid.UUID | None = None,
    keys: Iterable[str] | None = None,
) -> list[dict[str, Any] | None]:
    """Return one dict per scope in priority order (None for empty scopes)."""
    scope_filters = [ConfigLayer.scope == "portal_global"]
    if tenant_id is not None:
        scope_filters.append(and_(ConfigLayer.scope == "tenant", ConfigLayer.tenant_id == tenant_id))
        if user_id is not None:
            scope_filters.append(
                and_(
                    ConfigLayer.scope.in_(("tenant_user_admin", "tenant_user_personal")),
                    ConfigLayer.tenant_id == tenant_id,
                    ConfigLayer.user_id == user_id,
                )
            )

    stmt = select(ConfigLayer).where(or_(*scope_filters))
    if keys is not None:
        stmt = stmt.where(ConfigLayer.key.in_(list(keys)))

    by_scope: dict[str, dict[str, Any]] = {}
    for row in db.execute(stmt).scalars().all():
        by_scope.setdefault(row.scope, {})[row.key] = row.value

    return [by_scope.get(scope) for scope in CONFIG_SCOPES]


def get_value(
    db: Session,
    tenant_id: uuid.UUID | None,
    user_id: uuid.UUID | None,
    key: str,
    default: Any = None,
) -> Any:
    merged = resolve(load_layers(db, tenant_id, user_id, keys=[key]))
    return merged.get(key, default)


def as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


# ─── Detection thresholds ───

@dataclass(frozen=True)
class DetectionThresholds:
    variance_threshold: float
    variance_high_amount: float
    variance_critical_amount: float
    aging_warning_days: int
    aging_critical_days: int
    approval_overdue_days: int
    approval_critical_days: int
    payment_delay_high_days: int
    payment_delay_critical_days: int
    match_failure_critical_score: float
    staleness_warning_days: int
    staleness_critical_days: int
    staleness_severe_days: int
    match_score_matched_min: float
    match_score_partial_min: float
    claim_auto_approve_max_amount: float


_THRESHOLD_DEFAULTS = {
    "variance_threshold": ("VARIANCE_THRESHOLD", float),
    "variance_high_amount": ("VARIANCE_HIGH_AMOUNT", float),
    "variance_critical_amount": ("VARIANCE_CRITICAL_AMOUNT", float),
    "aging_warning_days": ("AGING_WARNING_DAYS", int),
    "aging_critical_days": ("AGING_CRITICAL_DAYS", int),
    "approval_overdue_days": ("APPROVAL_OVERDUE_DAYS", int),
    "approval_critical_days": ("APPROVAL_CRITICAL_DAYS", int),
    "payment_delay_high_days": ("PAYMENT_DELAY_HIGH_DAYS", int),
    "payment_delay_critical_days": ("PAYMENT_DELAY_CRITICAL_DAYS", int),
    "match_failure_critical_score": ("MATCH_FAILURE_CRITICAL_SCORE", float),
    "staleness_warning_days": ("STALENESS_WARNING_DAYS", int),
    "staleness_critical_days": ("STALENESS_CRITICAL_DAYS", int),
    "staleness_severe_days": ("STALENESS_SEVERE_DAYS", int),
    "match_score_matched_min": ("MATCH_SCORE_MATCHED_MIN", float),
    "match_score_partial_min": ("MATCH_SCORE_PARTIAL_MIN", float),
    "claim_auto_approve_max_amount": ("CLAIM_AUTO_APPROVE_MAX_AMOUNT", float),
}


def default_thresholds() -> DetectionThresholds:
    return DetectionThresholds(**{
        name: cast(getattr(settings, setting_name))
        for name, (setting_name, cast) in _THRESHOLD_DEFAULTS.items()
    })


def detection_thresholds(db: Session, tenant_id: uuid.UUID | None) -> DetectionThresholds:
    """Thresholds for a tenant: settings defaults overlaid with config layers."""
    merged = resolve(load_layers(db, tenant_id, keys=_THRESHOLD_DEFAULTS.keys()))
    values: dict[str, Any] = {}
    for name, (setting_name, cast) in _THRESHOLD_DEFAULTS.items():
        raw = merged.get(name, getattr(settings, setting_name))
        try:
            values[name] = cast(raw)
        except (TypeError, ValueError):
            logger.warning(
                "Ignoring unparseable config %s=%r for tenant %s; using default",
                name, raw, tenant_id,
            )
            values[name] = cast(getattr(settings, setting_name))
    return DetectionThresholds(**values)
