"""
Signal resolver.

Reads and records ApplicationSignal rows. The store is append-only: a new
value for a key supersedes the current row, which is kept for audit.

Public API:
    get_signal_snapshot(tenant_id, application_id)          → {KEY: entry}
    get_current_signal(tenant_id, application_id, key)      → row | None
    record_signal(...)                                      → row (no commit)
    set_manual_signal(...)                                  → dict (commits)
    list_signals(tenant_id, application_id, include_history)
    get_signal_history(tenant_id, application_id, key)
"""

import logging

from sqlalchemy import select

from tracker.core.exceptions import ValidationError
from tracker.models import db
from tracker.models.base import _utcnow
from tracker.models.pipeline import Application
from tracker.models.signal import SIGNAL_SOURCES, SIGNAL_TYPES, ApplicationSignal
from tracker.services.helpers.scoped_queries import get_scoped
from tracker.services.signal_conditions import normalize_signal_key

logger = logging.getLogger(__name__)

MAX_KEY_LENGTH = 100


# ── Reads ────────────────────────────────────────────────────────────────────


def _current_rows(tenant_id: int, application_id: str) -> list[ApplicationSignal]:
    stmt = (
        select(ApplicationSignal)
        .where(
            ApplicationSignal.tenant_id == tenant_id,
            ApplicationSignal.application_id == application_id,
            ApplicationSignal.superseded_at.is_(None),
        )
        .order_by(ApplicationSignal.signal_key, ApplicationSignal.set_at.desc())
    )
    return db.session.execute(stmt).scalars().all()


def get_signal_snapshot(tenant_id: int, application_id: str) -> dict:
    """Current value of every signal of the application.

    Returns:
        {"BACKGROUND_CHECK": {"value": True, "type": "boolean", "set_at": ...,
                              "set_by": 3, "source": "MANUAL", "source_id": None}}
    """
    snapshot = {}
    for row in _current_rows(tenant_id, application_id):
        # Rows are newest-first per key; keep the first one seen.
        snapshot.setdefault(row.signal_key, row.snapshot_entry())
    return snapshot


def get_current_signal(tenant_id: int, application_id: str, key: str):
    stmt = (
        select(ApplicationSignal)
        .where(
            ApplicationSignal.tenant_id == tenant_id,
            ApplicationSignal.application_id == application_id,
            ApplicationSignal.signal_key == normalize_signal_key(key),
            ApplicationSignal.superseded_at.is_(None),
        )
        .order_by(ApplicationSignal.set_at.desc())
        .limit(1)
    )
    return db.session.execute(stmt).scalar_one_or_none()


# ── Writes ───────────────────────────────────────────────────────────────────


def coerce_signal_value(signal_type: str, value):
    """Validate ``value`` against ``signal_type`` and return the typed value.

    Raises:
        ValidationError: type unknown or value not representable in the type.
    """
    if signal_type not in SIGNAL_TYPES:
        raise ValidationError(
            f"Invalid signal_type '{signal_type}'. Must be one of: {', '.join(sorted(SIGNAL_TYPES))}"
        )
    if value is None:
        raise ValidationError("value is required")

    if signal_type == "boolean":
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in ("true", "false"):
            return text == "true"
        raise ValidationError("Boolean signal value must be true or false")

    if signal_type == "integer":
        if isinstance(value, bool):
            raise ValidationError("Integer signal value must be a whole number")
        try:
            number = float(value)
        except (TypeError, ValueError):
            raise ValidationError("Integer signal value must be a whole number")
        if not number.is_integer():
            raise ValidationError("Integer signal value must be a whole number")
        return int(number)

    if signal_type == "float":
        if isinstance(value, bool):
            raise ValidationError("Float signal value must be numeric")
        try:
            return float(value)
        except (TypeError, ValueError):
            raise ValidationError("Float signal value must be numeric")

    return str(value)


def record_signal(
    tenant_id: int,
    application_id: str,
    *,
    signal_key: str,
    signal_type: str,
    value,
    source_type: str,
    source_id: str | None = None,
    set_by: int | None = None,
    note: str | None = None,
) -> ApplicationSignal:
    """Append a new value for a signal key, superseding the current row.

    Does NOT commit - the caller owns the transaction.
    """
    key = normalize_signal_key(signal_key)
    if not key:
        raise ValidationError("signal_key is required")
    if len(key) > MAX_KEY_LENGTH:
        raise ValidationError(f"signal_key must be at most {MAX_KEY_LENGTH} characters")
    if source_type not in SIGNAL_SOURCES:
        raise ValidationError(f"Invalid source_type '{source_type}'")
    typed = coerce_signal_value(signal_type, value)

    previous = get_current_signal(tenant_id, application_id, key)

    row = ApplicationSignal(
        tenant_id=tenant_id,
        application_id=application_id,
        signal_key=key,
        signal_type=signal_type,
        source_type=source_type,
        source_id=source_id,
        set_by=set_by,
        note=note,
        set_at=_utcnow(),
    )
    if signal_type == "boolean":
        row.value_boolean = typed
    elif signal_type in ("integer", "float"):
        row.value_numeric = typed
    else:
        row.value_text = typed
    db.session.add(row)
    db.session.flush()

    if previous is not None:
        previous.superseded_at = row.set_at
        previous.superseded_by = row.id
        db.session.flush()

    logger.info(
        "Signal recorded app=%s key=%s source=%s", application_id, key, source_type,
        extra={"tenant_id": tenant_id},
    )
    return row


def set_manual_signal(
    tenant_id: int,
    application_id: str,
    *,
    signal_key: str,
    signal_type: str,
    value,
    user_id: int | None,
    note: str | None = None,
) -> dict:
    """Record a MANUAL signal for an application of the tenant and commit."""
    get_scoped(Application, application_id, tenant_id=tenant_id)
    row = record_signal(
        tenant_id,
        application_id,
        signal_key=signal_key,
        signal_type=signal_type,
        value=value,
        source_type="MANUAL",
        set_by=user_id,
        note=note,
    )
    db.session.commit()
    return row.to_dict()


# ── Listing ──────────────────────────────────────────────────────────────────


def list_signals(tenant_id: int, application_id: str, include_history: bool = False) -> dict:
    """Signals of an application.

    Returns:
        {"signals": [current rows]} or, with include_history,
        {"signals": {KEY: {"current": row | None, "history": [superseded rows]}}}
    """
    get_scoped(Application, application_id, tenant_id=tenant_id)

    if not include_history:
        return {"signals": [row.to_dict() for row in _current_rows(tenant_id, application_id)]}

    rows = (
        ApplicationSignal.query_for_tenant(tenant_id)
        .filter_by(application_id=application_id)
        .order_by(ApplicationSignal.signal_key, ApplicationSignal.set_at.desc())
        .all()
    )
    grouped: dict[str, dict] = {}
    for row in rows:
        bucket = grouped.setdefault(row.signal_key, {"current": None, "history": []})
        if row.superseded_at is None and bucket["current"] is None:
            bucket["current"] = row.to_dict()
        else:
            bucket["history"].append(row.to_dict())
    return {"signals": grouped}


def get_signal_history(tenant_id: int, application_id: str, key: str) -> list[dict]:
    """Every value ever recorded for one key, newest first."""
    get_scoped(Application, application_id, tenant_id=tenant_id)
    rows = (
        ApplicationSignal.query_for_tenant(tenant_id)
        .filter_by(application_id=application_id, signal_key=normalize_signal_key(key))
        .order_by(ApplicationSignal.set_at.desc())
        .all()
    )
    return [row.to_dict() for row in rows]
