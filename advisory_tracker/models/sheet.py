"""
Advisory Tracker
Sheet and entry models (the canonical entry store).

Models:
    - Sheet: one uploaded batch of advisories for a reporting period
    - SheetEntry: one advisory finding of a sheet, with the lock/completion overlay

The lock is not a separate table: ``locked_by_user_id`` + ``locked_at`` live on
the entry row so that acquiring it is a single conditional UPDATE.
"""

from datetime import datetime, timezone

from advisory_tracker.models import db

# ── Constants ────────────────────────────────────────────────────────────────

# Identity of the finding. Read through a join, never copied into responses.
CANONICAL_FIELDS = (
    "product_name",
    "product_category",
    "vendor_name",
    "oem_vendor",
    "source",
    "risk_level",
    "cve",
)

YES_NO_DEFAULT = "N"


def _iso(value):
    return value.isoformat() if value else None


class Sheet(db.Model):
    """Monthly advisory sheet."""

    __tablename__ = "sheets"

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, default="")
    month_year = db.Column(db.Date, nullable=True)
    status = db.Column(db.String(20), nullable=False, default="draft", comment="draft | distributed")
    uploaded_by = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    distributed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    entries = db.relationship(
        "SheetEntry", back_populates="sheet", lazy="dynamic",
        cascade="all, delete-orphan", passive_deletes=True,
    )
    assignments = db.relationship(
        "TeamSheet", back_populates="sheet", lazy="dynamic",
        cascade="all, delete-orphan", passive_deletes=True,
    )

    def to_dict(self):
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "month_year": _iso(self.month_year),
            "status": self.status,
            "uploaded_by": self.uploaded_by,
            "distributed_at": _iso(self.distributed_at),
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<Sheet {self.id}: {self.title[:40]}>"


class SheetEntry(db.Model):
    """
    Canonical advisory row.

    Identity fields are immutable after ingestion. The team-mutable columns
    hold the ingested baseline that is copied into every team response at
    distribution time.
    """

    __tablename__ = "sheet_entries"
    __table_args__ = (
        db.Index("ix_sheet_entries_sheet_completed", "sheet_id", "is_completed"),
    )

    id = db.Column(db.Integer, primary_key=True)
    sheet_id = db.Column(
        db.Integer, db.ForeignKey("sheets.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    row_number = db.Column(db.Integer, nullable=True)

    # Identity
    product_name = db.Column(db.String(255))
    product_category = db.Column(db.String(255))
    vendor_name = db.Column(db.String(255))
    oem_vendor = db.Column(db.String(255))
    source = db.Column(db.Text)
    risk_level = db.Column(db.String(50))
    cve = db.Column(db.Text)

    # Ingested baseline of team-mutable fields
    current_status = db.Column(db.String(255))
    deployed_in_ke = db.Column(db.String(1), comment="Y | N")
    site = db.Column(db.String(255))
    vendor_contacted = db.Column(db.String(1), default=YES_NO_DEFAULT)
    vendor_contact_date = db.Column(db.Date)
    patching = db.Column(db.Text)
    patching_est_release_date = db.Column(db.Date)
    implementation_date = db.Column(db.Date)
    estimated_completion_date = db.Column(db.Date)
    estimated_time = db.Column(db.String(255))
    compensatory_controls_provided = db.Column(db.String(1), default=YES_NO_DEFAULT)
    compensatory_controls_details = db.Column(db.Text)
    comments = db.Column(db.Text)

    # Lock / completion overlay
    locked_by_user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True,
    )
    locked_at = db.Column(db.DateTime(timezone=True), nullable=True)
    is_completed = db.Column(db.Boolean, nullable=False, default=False)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    assigned_team_id = db.Column(
        db.Integer, db.ForeignKey("teams.id", ondelete="SET NULL"), nullable=True, index=True,
    )

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    sheet = db.relationship("Sheet", back_populates="entries")
    locked_by = db.relationship("User", foreign_keys=[locked_by_user_id])

    def canonical_dict(self) -> dict:
        """Read-only identity fields, as exposed in team views."""
        return {name: getattr(self, name) for name in CANONICAL_FIELDS}

    def lock_dict(self) -> dict:
        return {
            "locked_by_user_id": self.locked_by_user_id,
            "locked_at": _iso(self.locked_at),
            "is_completed": bool(self.is_completed),
            "completed_at": _iso(self.completed_at),
        }

    def to_dict(self):
        from advisory_tracker.models.assignment import RESPONSE_FIELDS

        data = {"id": self.id, "sheet_id": self.sheet_id, "row_number": self.row_number}
        data.update(self.canonical_dict())
        for name in RESPONSE_FIELDS:
            value = getattr(self, name)
            data[name] = _iso(value) if hasattr(value, "isoformat") else value
        data.update(self.lock_dict())
        data["assigned_team_id"] = self.assigned_team_id
        return data

    def __repr__(self):
        return f"<SheetEntry {self.id} sheet={self.sheet_id} cve={self.cve}>"
