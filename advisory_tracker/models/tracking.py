"""
Advisory Tracker
Edit provenance model.

Models:
    - EditedEntryTracking: one row per (user, sheet, entry) with an edit counter
"""

from datetime import datetime, timezone

from advisory_tracker.models import db


class EditedEntryTracking(db.Model):
    """
    Who edited which entry, and how often.

    The unique key (user_id, sheet_id, entry_id) is what makes the
    insert-or-increment upsert atomic under concurrent edits.
    """

    __tablename__ = "edited_entries_tracking"
    __table_args__ = (
        db.UniqueConstraint("user_id", "sheet_id", "entry_id", name="uq_edit_tracking_user_sheet_entry"),
        db.Index("ix_edit_tracking_user_sheet", "user_id", "sheet_id"),
        db.Index("ix_edit_tracking_sheet_entry", "sheet_id", "entry_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    sheet_id = db.Column(db.Integer, db.ForeignKey("sheets.id", ondelete="CASCADE"), nullable=False)
    entry_id = db.Column(db.Integer, db.ForeignKey("sheet_entries.id", ondelete="CASCADE"), nullable=False)
    response_id = db.Column(
        db.Integer, db.ForeignKey("sheet_responses.id", ondelete="SET NULL"), nullable=True,
    )
    first_edited_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    last_edited_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    edit_count = db.Column(db.Integer, nullable=False, default=1)

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "sheet_id": self.sheet_id,
            "entry_id": self.entry_id,
            "response_id": self.response_id,
            "first_edited_at": self.first_edited_at.isoformat() if self.first_edited_at else None,
            "last_edited_at": self.last_edited_at.isoformat() if self.last_edited_at else None,
            "edit_count": self.edit_count,
        }

    def __repr__(self):
        return f"<EditedEntryTracking user={self.user_id} entry={self.entry_id} x{self.edit_count}>"
