"""initial_advisory_tracker_schema

Create teams, users, sheets, sheet_entries (with the lock overlay),
team_sheets, sheet_responses, edited_entries_tracking, entry_logs and
sheet_events.

Revision ID: 5e1a7c2d9b10
Revises:
Create Date: 2026-10-17 09:00:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = "5e1a7c2d9b10"
down_revision = None
branch_labels = None
depends_on = None


def _team_mutable_columns():
    return [
        sa.Column("current_status", sa.String(length=255), nullable=True),
        sa.Column("deployed_in_ke", sa.String(length=1), nullable=True),
        sa.Column("site", sa.String(length=255), nullable=True),
        sa.Column("vendor_contacted", sa.String(length=1), nullable=True, server_default="N"),
        sa.Column("vendor_contact_date", sa.Date(), nullable=True),
        sa.Column("patching", sa.Text(), nullable=True),
        sa.Column("patching_est_release_date", sa.Date(), nullable=True),
        sa.Column("implementation_date", sa.Date(), nullable=True),
        sa.Column("estimated_completion_date", sa.Date(), nullable=True),
        sa.Column("estimated_time", sa.String(length=255), nullable=True),
        sa.Column("compensatory_controls_provided", sa.String(length=1), nullable=True, server_default="N"),
        sa.Column("compensatory_controls_details", sa.Text(), nullable=True),
        sa.Column("comments", sa.Text(), nullable=True),
    ]


def upgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing_tables = set(inspector.get_table_names())

    if "teams" not in existing_tables:
        op.create_table(
            "teams",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=100), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("name"),
        )

    if "users" not in existing_tables:
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("username", sa.String(length=150), nullable=False),
            sa.Column("full_name", sa.String(length=255), nullable=True),
            sa.Column("email", sa.String(length=255), nullable=True),
            sa.Column("role", sa.String(length=20), nullable=False, server_default="member"),
            sa.Column("team_id", sa.Integer(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["team_id"], ["teams.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("username"),
        )
        op.create_index("ix_users_team_id", "users", ["team_id"])

    if "sheets" not in existing_tables:
        op.create_table(
            "sheets",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("title", sa.String(length=255), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("month_year", sa.Date(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="draft"),
            sa.Column("uploaded_by", sa.Integer(), nullable=True),
            sa.Column("distributed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["uploaded_by"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )

    if "sheet_entries" not in existing_tables:
        op.create_table(
            "sheet_entries",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("sheet_id", sa.Integer(), nullable=False),
            sa.Column("row_number", sa.Integer(), nullable=True),
            sa.Column("product_name", sa.String(length=255), nullable=True),
            sa.Column("product_category", sa.String(length=255), nullable=True),
            sa.Column("vendor_name", sa.String(length=255), nullable=True),
            sa.Column("oem_vendor", sa.String(length=255), nullable=True),
            sa.Column("source", sa.Text(), nullable=True),
            sa.Column("risk_level", sa.String(length=50), nullable=True),
            sa.Column("cve", sa.Text(), nullable=True),
            *_team_mutable_columns(),
            sa.Column("locked_by_user_id", sa.Integer(), nullable=True),
            sa.Column("locked_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("is_completed", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("assigned_team_id", sa.Integer(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["sheet_id"], ["sheets.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["locked_by_user_id"], ["users.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["assigned_team_id"], ["teams.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_sheet_entries_sheet_id", "sheet_entries", ["sheet_id"])
        op.create_index("ix_sheet_entries_locked_by_user_id", "sheet_entries", ["locked_by_user_id"])
        op.create_index("ix_sheet_entries_assigned_team_id", "sheet_entries", ["assigned_team_id"])
        op.create_index("ix_sheet_entries_sheet_completed", "sheet_entries", ["sheet_id", "is_completed"])

    if "team_sheets" not in existing_tables:
        op.create_table(
            "team_sheets",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("sheet_id", sa.Integer(), nullable=False),
            sa.Column("team_id", sa.Integer(), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="assigned"),
            sa.Column("assigned_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("assigned_by", sa.Integer(), nullable=True),
            sa.Column("started_by", sa.Integer(), nullable=True),
            sa.Column("completed_by", sa.Integer(), nullable=True),
            sa.Column("unlocked_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("unlocked_by", sa.Integer(), nullable=True),
            sa.Column("unlock_reason", sa.Text(), nullable=True),
            sa.ForeignKeyConstraint(["sheet_id"], ["sheets.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["team_id"], ["teams.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["assigned_by"], ["users.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["started_by"], ["users.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["completed_by"], ["users.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["unlocked_by"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("sheet_id", "team_id", name="uq_team_sheets_sheet_team"),
        )
        op.create_index("ix_team_sheets_sheet_id", "team_sheets", ["sheet_id"])
        op.create_index("ix_team_sheets_team_id", "team_sheets", ["team_id"])
        op.create_index("ix_team_sheets_team_status", "team_sheets", ["team_id", "status"])

    if "sheet_responses" not in existing_tables:
        op.create_table(
            "sheet_responses",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("team_sheet_id", sa.Integer(), nullable=False),
            sa.Column("original_entry_id", sa.Integer(), nullable=False),
            *_team_mutable_columns(),
            sa.Column("updated_by", sa.Integer(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["team_sheet_id"], ["team_sheets.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["original_entry_id"], ["sheet_entries.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["updated_by"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint(
                "team_sheet_id", "original_entry_id", name="uq_sheet_responses_assignment_entry",
            ),
        )
        op.create_index("ix_sheet_responses_team_sheet_id", "sheet_responses", ["team_sheet_id"])
        op.create_index("ix_sheet_responses_original_entry_id", "sheet_responses", ["original_entry_id"])

    if "edited_entries_tracking" not in existing_tables:
        op.create_table(
            "edited_entries_tracking",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("user_id", sa.Integer(), nullable=False),
            sa.Column("sheet_id", sa.Integer(), nullable=False),
            sa.Column("entry_id", sa.Integer(), nullable=False),
            sa.Column("response_id", sa.Integer(), nullable=True),
            sa.Column("first_edited_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("last_edited_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("edit_count", sa.Integer(), nullable=False, server_default="1"),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["sheet_id"], ["sheets.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["entry_id"], ["sheet_entries.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["response_id"], ["sheet_responses.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("user_id", "sheet_id", "entry_id", name="uq_edit_tracking_user_sheet_entry"),
        )
        op.create_index("ix_edit_tracking_user_sheet", "edited_entries_tracking", ["user_id", "sheet_id"])
        op.create_index("ix_edit_tracking_sheet_entry", "edited_entries_tracking", ["sheet_id", "entry_id"])

    if "entry_logs" not in existing_tables:
        op.create_table(
            "entry_logs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("entry_id", sa.Integer(), nullable=False),
            sa.Column("user_id", sa.Integer(), nullable=True),
            sa.Column("action", sa.String(length=30), nullable=False),
            sa.Column("details", sa.Text(), nullable=True),
            sa.Column("metadata_json", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["entry_id"], ["sheet_entries.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_entry_logs_entry", "entry_logs", ["entry_id"])
        op.create_index("idx_entry_logs_user", "entry_logs", ["user_id"])
        op.create_index("idx_entry_logs_action", "entry_logs", ["action"])
        op.create_index("idx_entry_logs_ts", "entry_logs", ["created_at"])

    if "sheet_events" not in existing_tables:
        op.create_table(
            "sheet_events",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("event_type", sa.String(length=40), nullable=False),
            sa.Column("sheet_id", sa.Integer(), nullable=False),
            sa.Column("team_id", sa.Integer(), nullable=True),
            sa.Column("entry_id", sa.Integer(), nullable=True),
            sa.Column("actor_user_id", sa.Integer(), nullable=True),
            sa.Column("payload_json", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["sheet_id"], ["sheets.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["team_id"], ["teams.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["actor_user_id"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_sheet_events_event_type", "sheet_events", ["event_type"])
        op.create_index("ix_sheet_events_pending", "sheet_events", ["delivered_at", "id"])


def downgrade():
    for table in (
        "sheet_events",
        "entry_logs",
        "edited_entries_tracking",
        "sheet_responses",
        "team_sheets",
        "sheet_entries",
        "sheets",
        "users",
        "teams",
    ):
        op.drop_table(table)
