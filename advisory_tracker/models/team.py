"""
Advisory Tracker
Team and user models.

Models:
    - Team: operational group (Distribution, Transmission, Generation, ...)
    - User: team member or administrator

Teams are always referenced by their integer primary key. Team names are
display data only and are never persisted into assignment or entry columns.
"""

from datetime import datetime, timezone

from advisory_tracker.models import db

USER_ROLES = {"admin", "member"}


class Team(db.Model):
    """Operational team that receives distributed sheets."""

    __tablename__ = "teams"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False, unique=True)
    description = db.Column(db.Text, default="")
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    members = db.relationship("User", back_populates="team", lazy="dynamic")

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "is_active": self.is_active,
        }

    def __repr__(self):
        return f"<Team {self.id}: {self.name}>"


class User(db.Model):
    """Platform user. ``team_id`` is NULL for administrators outside any team."""

    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(150), nullable=False, unique=True)
    full_name = db.Column(db.String(255), default="")
    email = db.Column(db.String(255), nullable=True)
    role = db.Column(db.String(20), nullable=False, default="member", comment="admin | member")
    team_id = db.Column(
        db.Integer, db.ForeignKey("teams.id", ondelete="SET NULL"), nullable=True, index=True,
    )
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    team = db.relationship("Team", back_populates="members")

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    def to_dict(self):
        return {
            "id": self.id,
            "username": self.username,
            "full_name": self.full_name,
            "role": self.role,
            "team_id": self.team_id,
        }

    def __repr__(self):
        return f"<User {self.id}: {self.username}>"
