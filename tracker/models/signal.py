"""
ApplicationSignal - typed, keyed facts about an application.

Append-only: recording a new value for a key marks the previous row with
``superseded_at`` / ``superseded_by`` and inserts a new row. The single row
per (application, key) with ``superseded_at IS NULL`` is the current value;
superseded rows stay for audit.
"""

from tracker.models import db
from tracker.models.base import TenantModel, _iso, _utcnow, _uuid

SIGNAL_TYPES = frozenset({"boolean", "integer", "float", "text"})
SIGNAL_SOURCES = frozenset({"EVALUATION", "MANUAL", "SYSTEM"})


class ApplicationSignal(TenantModel):
    __tablename__ = "application_signals"
    __table_args__ = (
        db.Index("ix_signals_app_key_current", "application_id", "signal_key", "superseded_at"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    application_id = db.Column(
        db.String(36),
        db.ForeignKey("applications.id", ondelete="CASCADE"),
        nullable=False,
    )
    signal_key = db.Column(db.String(100), nullable=False)
    signal_type = db.Column(db.String(20), nullable=False)
    value_boolean = db.Column(db.Boolean)
    value_numeric = db.Column(db.Float)
    value_text = db.Column(db.Text)
    source_type = db.Column(db.String(20), nullable=False, default="MANUAL")
    source_id = db.Column(db.String(36))
    set_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    set_at = db.Column(db.DateTime, nullable=False, default=_utcnow)
    note = db.Column(db.Text)
    superseded_at = db.Column(db.DateTime)
    superseded_by = db.Column(db.String(36))

    @property
    def value(self):
        if self.signal_type == "boolean":
            return self.value_boolean
        if self.signal_type == "integer":
            return int(self.value_numeric) if self.value_numeric is not None else None
        if self.signal_type == "float":
            return self.value_numeric
        return self.value_text

    def snapshot_entry(self):
        """Point-in-time copy stored in the execution log."""
        return {
            "value": self.value,
            "type": self.signal_type,
            "set_at": _iso(self.set_at),
            "set_by": self.set_by,
            "source": self.source_type,
            "source_id": self.source_id,
        }

    def to_dict(self):
        return {
            "id": self.id,
            "applicationId": self.application_id,
            "signalKey": self.signal_key,
            "signalType": self.signal_type,
            "value": self.value,
            "sourceType": self.source_type,
            "sourceId": self.source_id,
            "setBy": self.set_by,
            "setAt": _iso(self.set_at),
            "note": self.note,
            "supersededAt": _iso(self.superseded_at),
            "supersededBy": self.superseded_by,
        }
