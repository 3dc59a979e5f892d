"""
Advisory Tracker
Entry lock audit model.

Models:
    - EntryLog: immutable, append-only trail of lock lifecycle actions
"""

import json
from datetime import datetime, timezone

from advisory_tracker.models import db

# ── Constants ────────────────────────────────────────────────────────────────

ENTRY_LOG_ACTIONS = {
    "claimed",
    "released",
    "force_released",
    "expired_released",
    "completed",
    "reopened",
    "reset",
}


class EntryLog(db.Model):
    """
    One row per lock lifecycle action on an entry.

    ``metadata_json`` carries structured context (previous holder, fields
    applied on completion, ...).
    """

    __tablename__ = "entry_logs"
    __table_args__ = (
        db.Index("idx_entry_logs_entry", "entry_id"),
        db.Index("idx_entry_logs_user", "user_id"),
        db.Index("idx_entry_logs_action", "action"),
        db.Index("idx_entry_logs_ts", "created_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    entry_id = db.Column(
        db.Integer, db.ForeignKey("sheet_entries.id", ondelete="CASCADE"), nullable=False,
    )
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
        comment="NULL for system actions (expired lock sweep)",
    )
    action = db.Column(db.String(30), nullable=False, comment="claimed | released | completed | ...")
    details = db.Column(db.Text, default="")
    metadata_json = db.Column(db.Text, default="{}")
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    @property
    def meta(self) -> dict:
        try:
            return json.loads(self.metadata_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "entry_id": self.entry_id,
            "user_id": self.user_id,
            "action": self.action,
            "details": self.details,
            "metadata": self.meta,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<EntryLog {self.id}: {self.action} on entry {self.entry_id}>"


# ── Convenience writer ───────────────────────────────────────────────────────

def write_entry_log(
    *,
    entry_id: int,
    action: str,
    user_id: int | None = None,
    details: str = "",
    metadata: dict | None = None,
) -> EntryLog:
    """
    Append a single entry log row.  Uses ``flush`` so callers keep
    transaction control.
    """
    log = EntryLog(
        entry_id=entry_id,
        user_id=user_id,
        action=action,
        details=details,
        metadata_json=json.dumps(metadata or {}, default=str),
    )
    db.session.add(log)
    db.session.flush()
    return log
