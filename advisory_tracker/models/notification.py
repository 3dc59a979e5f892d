"""
Advisory Tracker
Domain event outbox.

Models:
    - SheetEvent: one domain event for the notification collaborator

Events are written in the same transaction as the transition that produced
them. Delivery (email, in-app, SSE) happens elsewhere and marks rows with
``delivered_at``.
"""

import json
from datetime import datetime, timezone

from advisory_tracker.models import db

# ── Constants ────────────────────────────────────────────────────────────────

EVENT_TYPES = {
    "sheet.distributed",
    "assignment.started",
    "assignment.submitted",
    "assignment.unlocked",
    "entry.completed",
}


class SheetEvent(db.Model):
    """Outbox row. ``entry_id`` is set only for entry-level events."""

    __tablename__ = "sheet_events"
    __table_args__ = (
        db.Index("ix_sheet_events_pending", "delivered_at", "id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    event_type = db.Column(db.String(40), nullable=False, index=True)
    sheet_id = db.Column(db.Integer, db.ForeignKey("sheets.id", ondelete="CASCADE"), nullable=False)
    team_id = db.Column(db.Integer, db.ForeignKey("teams.id", ondelete="SET NULL"), nullable=True)
    entry_id = db.Column(db.Integer, nullable=True)
    actor_user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    payload_json = db.Column(db.Text, default="{}")
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    delivered_at = db.Column(db.DateTime(timezone=True), nullable=True)

    @property
    def payload(self) -> dict:
        try:
            return json.loads(self.payload_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self):
        return {
            "id": self.id,
            "type": self.event_type,
            "sheet_id": self.sheet_id,
            "team_id": self.team_id,
            "entry_id": self.entry_id,
            "actor_user_id": self.actor_user_id,
            "payload": self.payload,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "delivered_at": self.delivered_at.isoformat() if self.delivered_at else None,
        }

    def __repr__(self):
        return f"<SheetEvent {self.id}: {self.event_type} sheet={self.sheet_id}>"
