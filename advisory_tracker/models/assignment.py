"""
Advisory Tracker
Team assignment ledger and per-team responses.

Models:
    - TeamSheet: (sheet, team) assignment with its lifecycle status
    - SheetResponse: one team's editable copy of one entry

State machine (TeamSheet.status):
    assigned     -> in_progress   (first response update)
    in_progress  -> completed     (team submits the sheet)
    completed    -> in_progress   (administrative unlock)
"""

from datetime import datetime, timezone

from advisory_tracker.models import db

# ── Constants ────────────────────────────────────────────────────────────────

ASSIGNMENT_STATUSES = ("assigned", "in_progress", "completed")

ASSIGNMENT_TRANSITIONS = {
    "assigned":    ["in_progress"],
    "in_progress": ["completed"],
    "completed":   ["in_progress"],
}

# Team-mutable fields copied from the entry at distribution time.
RESPONSE_FIELDS = (
    "current_status",
    "deployed_in_ke",
    "site",
    "vendor_contacted",
    "vendor_contact_date",
    "patching",
    "patching_est_release_date",
    "implementation_date",
    "estimated_completion_date",
    "estimated_time",
    "compensatory_controls_provided",
    "compensatory_controls_details",
    "comments",
)

DATE_FIELDS = frozenset({
    "vendor_contact_date",
    "patching_est_release_date",
    "implementation_date",
    "estimated_completion_date",
})

YES_NO_FIELDS = frozenset({
    "deployed_in_ke",
    "vendor_contacted",
    "compensatory_controls_provided",
})


def validate_assignment_transition(old_status, new_status):
    """Return True if the assignment may move from old_status to new_status."""
    return new_status in ASSIGNMENT_TRANSITIONS.get(old_status, [])


def _iso(value):
    return value.isoformat() if value else None


class TeamSheet(db.Model):
    """
    Distribution of a sheet to one team.

    One row per (sheet, team). ``*_by`` columns hold user ids of whoever
    performed the transition; the ``unlock_*`` columns describe the most
    recent administrative reopen.
    """

    __tablename__ = "team_sheets"
    __table_args__ = (
        db.UniqueConstraint("sheet_id", "team_id", name="uq_team_sheets_sheet_team"),
        db.Index("ix_team_sheets_team_status", "team_id", "status"),
    )

    id = db.Column(db.Integer, primary_key=True)
    sheet_id = db.Column(
        db.Integer, db.ForeignKey("sheets.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    team_id = db.Column(
        db.Integer, db.ForeignKey("teams.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    status = db.Column(
        db.String(20), nullable=False, default="assigned",
        comment="assigned | in_progress | completed",
    )

    assigned_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    assigned_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    started_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    completed_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    unlocked_at = db.Column(db.DateTime(timezone=True), nullable=True)
    unlocked_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    unlock_reason = db.Column(db.Text, nullable=True)

    sheet = db.relationship("Sheet", back_populates="assignments")
    team = db.relationship("Team")
    responses = db.relationship(
        "SheetResponse", back_populates="assignment", lazy="dynamic",
        cascade="all, delete-orphan", passive_deletes=True,
    )

    def to_dict(self):
        return {
            "id": self.id,
            "sheet_id": self.sheet_id,
            "team_id": self.team_id,
            "team_name": self.team.name if self.team else None,
            "status": self.status,
            "assigned_at": _iso(self.assigned_at),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "assigned_by": self.assigned_by,
            "started_by": self.started_by,
            "completed_by": self.completed_by,
            "unlocked_at": _iso(self.unlocked_at),
            "unlocked_by": self.unlocked_by,
            "unlock_reason": self.unlock_reason,
        }

    def __repr__(self):
        return f"<TeamSheet {self.id} sheet={self.sheet_id} team={self.team_id} {self.status}>"


class SheetResponse(db.Model):
    """
    A team's isolated, mutable copy of one entry.

    Only RESPONSE_FIELDS live here. Product, CVE, risk level and source are
    read from the original entry through ``original_entry``.
    """

    __tablename__ = "sheet_responses"
    __table_args__ = (
        db.UniqueConstraint(
            "team_sheet_id", "original_entry_id", name="uq_sheet_responses_assignment_entry",
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    team_sheet_id = db.Column(
        db.Integer, db.ForeignKey("team_sheets.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    original_entry_id = db.Column(
        db.Integer, db.ForeignKey("sheet_entries.id", ondelete="CASCADE"), nullable=False, index=True,
    )

    current_status = db.Column(db.String(255))
    deployed_in_ke = db.Column(db.String(1))
    site = db.Column(db.String(255))
    vendor_contacted = db.Column(db.String(1), default="N", server_default="N")
    vendor_contact_date = db.Column(db.Date)
    patching = db.Column(db.Text)
    patching_est_release_date = db.Column(db.Date)
    implementation_date = db.Column(db.Date)
    estimated_completion_date = db.Column(db.Date)
    estimated_time = db.Column(db.String(255))
    compensatory_controls_provided = db.Column(db.String(1), default="N", server_default="N")
    compensatory_controls_details = db.Column(db.Text)
    comments = db.Column(db.Text)

    updated_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    assignment = db.relationship("TeamSheet", back_populates="responses")
    original_entry = db.relationship("SheetEntry")

    def field_values(self) -> dict:
        return {name: getattr(self, name) for name in RESPONSE_FIELDS}

    def to_dict(self, entry=None):
        """Serialize; with ``entry`` given, merge the read-only canonical fields."""
        data = {
            "id": self.id,
            "team_sheet_id": self.team_sheet_id,
            "original_entry_id": self.original_entry_id,
        }
        for name, value in self.field_values().items():
            data[name] = _iso(value) if name in DATE_FIELDS else value
        data["updated_by"] = self.updated_by
        data["created_at"] = _iso(self.created_at)
        data["updated_at"] = _iso(self.updated_at)
        if entry is not None:
            data.update(entry.canonical_dict())
            data.update(entry.lock_dict())
        return data

    def __repr__(self):
        return f"<SheetResponse {self.id} assignment={self.team_sheet_id} entry={self.original_entry_id}>"
