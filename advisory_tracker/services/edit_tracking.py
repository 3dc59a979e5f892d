"""
Edit tracking ledger.

Records which user edited which entry of which sheet, and how many times,
as an insert-or-increment upsert on (user_id, sheet_id, entry_id).

Tracking is a side effect: ``track_edit`` runs inside a savepoint and a
failure is logged, never raised, so the edit that triggered it still
commits.

Usage:
    from advisory_tracker.services.edit_tracking import track_edit

    track_edit(user_id=7, sheet_id=1, entry_id=42, response_id=311)
"""

import logging

from sqlalchemy import func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError

from advisory_tracker.models import db
from advisory_tracker.models.team import User
from advisory_tracker.models.tracking import EditedEntryTracking
from advisory_tracker.utils.helpers import utcnow

logger = logging.getLogger(__name__)

_CONFLICT_KEY = ["user_id", "sheet_id", "entry_id"]

_DIALECT_INSERT = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def _upsert_statement(insert_fn, values, now):
    stmt = insert_fn(EditedEntryTracking).values(**values)
    return stmt.on_conflict_do_update(
        index_elements=_CONFLICT_KEY,
        set_={
            "edit_count": EditedEntryTracking.edit_count + 1,
            "last_edited_at": now,
            "response_id": func.coalesce(stmt.excluded.response_id, EditedEntryTracking.response_id),
        },
    )


def _upsert_generic(values, now):
    """Read-then-write fallback for dialects without ON CONFLICT."""
    row = EditedEntryTracking.query.filter_by(
        user_id=values["user_id"], sheet_id=values["sheet_id"], entry_id=values["entry_id"],
    ).with_for_update().first()
    if row is None:
        try:
            with db.session.begin_nested():
                db.session.add(EditedEntryTracking(**values))
            return
        except IntegrityError:
            # A concurrent first edit won the insert; fall through to increment.
            row = EditedEntryTracking.query.filter_by(
                user_id=values["user_id"], sheet_id=values["sheet_id"], entry_id=values["entry_id"],
            ).with_for_update().one()
    row.edit_count = EditedEntryTracking.edit_count + 1
    row.last_edited_at = now
    if values.get("response_id") is not None:
        row.response_id = values["response_id"]
    db.session.flush()


def track_edit(*, user_id, sheet_id, entry_id, response_id=None, now=None):
    """
    Record one edit. Never raises.

    Returns:
        True when the ledger row was written, False when tracking failed.
    """
    now = now or utcnow()
    values = {
        "user_id": user_id,
        "sheet_id": sheet_id,
        "entry_id": entry_id,
        "response_id": response_id,
        "first_edited_at": now,
        "last_edited_at": now,
        "edit_count": 1,
    }
    try:
        insert_fn = _DIALECT_INSERT.get(db.engine.dialect.name)
        with db.session.begin_nested():
            if insert_fn is not None:
                db.session.execute(_upsert_statement(insert_fn, values, now))
            else:
                _upsert_generic(values, now)
    except Exception:
        logger.warning(
            "Edit tracking failed for user %s entry %s", user_id, entry_id,
            exc_info=True,
            extra={"user_id": user_id, "sheet_id": sheet_id, "entry_id": entry_id},
        )
        return False
    return True


def remove_tracking(*, sheet_id, entry_id, user_id=None):
    """
    Delete ledger rows for an entry (all users unless ``user_id`` given).

    Used when an entry is reset to its baseline. Returns the row count;
    the caller owns the commit.
    """
    q = EditedEntryTracking.query.filter_by(sheet_id=sheet_id, entry_id=entry_id)
    if user_id is not None:
        q = q.filter_by(user_id=user_id)
    return q.delete(synchronize_session="fetch")


# ── Queries ──────────────────────────────────────────────────────────────────


def edited_entry_ids_for_user(user_id, sheet_id):
    rows = db.session.execute(
        select(EditedEntryTracking.entry_id)
        .where(EditedEntryTracking.user_id == user_id, EditedEntryTracking.sheet_id == sheet_id)
        .order_by(EditedEntryTracking.entry_id)
    ).scalars()
    return list(rows)


def edited_entry_ids_for_team(team_id, sheet_id):
    """Entries touched by any member of the team."""
    rows = db.session.execute(
        select(EditedEntryTracking.entry_id)
        .join(User, User.id == EditedEntryTracking.user_id)
        .where(User.team_id == team_id, EditedEntryTracking.sheet_id == sheet_id)
        .distinct()
        .order_by(EditedEntryTracking.entry_id)
    ).scalars()
    return list(rows)


def user_edit_stats(user_id, sheet_id=None):
    """
    Per-sheet edit statistics for a user.

    Returns:
        {"user_id", "sheets_worked_on", "total_entries_edited", "total_edits",
         "sheets": [...]}
        where each sheet item has sheet_id, entries, edits, last_edited_at.
    """
    stmt = (
        select(
            EditedEntryTracking.sheet_id,
            func.count(EditedEntryTracking.id),
            func.coalesce(func.sum(EditedEntryTracking.edit_count), 0),
            func.max(EditedEntryTracking.last_edited_at),
        )
        .where(EditedEntryTracking.user_id == user_id)
        .group_by(EditedEntryTracking.sheet_id)
        .order_by(EditedEntryTracking.sheet_id)
    )
    if sheet_id is not None:
        stmt = stmt.where(EditedEntryTracking.sheet_id == sheet_id)

    sheets = []
    for sid, entries, edits, last in db.session.execute(stmt):
        sheets.append({
            "sheet_id": sid,
            "entries": int(entries),
            "edits": int(edits),
            "last_edited_at": last.isoformat() if last else None,
        })
    return {
        "user_id": user_id,
        "sheets_worked_on": len(sheets),
        "total_entries_edited": sum(s["entries"] for s in sheets),
        "total_edits": sum(s["edits"] for s in sheets),
        "sheets": sheets,
    }
