"""
Completion State Machine Service.

Drives a team's assignment through its lifecycle:

    assigned ──first response update──► in_progress ──submit──► completed
                                             ▲                       │
                                             └──── admin unlock ─────┘

Each transition is a conditional UPDATE on the current status, so when two
callers race only one of them moves the row and only one event is emitted.

Usage:
    from advisory_tracker.services.completion import submit_assignment

    submit_assignment(sheet_id=5, team_id=1, user_id=7)
"""

import logging

from sqlalchemy import func, select, update

from advisory_tracker.core.exceptions import (
    IncompleteSubmissionError,
    InvalidTransitionError,
    NotCompletedError,
    NotFoundError,
    ValidationError,
)
from advisory_tracker.models import db
from advisory_tracker.models.assignment import (
    SheetResponse,
    TeamSheet,
    validate_assignment_transition,
)
from advisory_tracker.models.sheet import SheetEntry
from advisory_tracker.models.team import User
from advisory_tracker.services.field_rules import is_response_complete
from advisory_tracker.services.notification import NotificationService
from advisory_tracker.utils.helpers import get_or_raise, utcnow

logger = logging.getLogger(__name__)


def get_assignment(sheet_id, team_id, *, for_update=False):
    q = TeamSheet.query.filter_by(sheet_id=sheet_id, team_id=int(team_id))
    if for_update:
        q = q.with_for_update().populate_existing()
    assignment = q.first()
    if assignment is None:
        raise NotFoundError(resource="TeamSheet", resource_id=f"sheet={sheet_id} team={team_id}")
    return assignment


def _transition(assignment_id, current, target, values):
    """Compare-and-set the status. Returns True when this call moved the row."""
    if not validate_assignment_transition(current, target):
        raise InvalidTransitionError(assignment_id, current, target)
    result = db.session.execute(
        update(TeamSheet)
        .where(TeamSheet.id == assignment_id, TeamSheet.status == current)
        .values(status=target, **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


# ── Progress ─────────────────────────────────────────────────────────────────


def pending_entry_ids(assignment_id):
    """Entry ids whose response does not satisfy the completion predicate."""
    rows = db.session.execute(
        select(SheetResponse)
        .join(SheetEntry, SheetEntry.id == SheetResponse.original_entry_id)
        .where(SheetResponse.team_sheet_id == assignment_id)
        .order_by(SheetEntry.row_number.asc(), SheetEntry.id.asc())
    ).scalars()
    return [r.original_entry_id for r in rows if not is_response_complete(r.field_values())]


def assignment_progress(assignment_id):
    """
    Share of responses satisfying the completion predicate.

    Reporting only; submission checks every response itself.
    """
    total = db.session.execute(
        select(func.count(SheetResponse.id)).where(SheetResponse.team_sheet_id == assignment_id)
    ).scalar() or 0
    pending = pending_entry_ids(assignment_id)
    complete = total - len(pending)
    return {
        "total": total,
        "complete": complete,
        "percentage": round(complete * 100.0 / total, 1) if total else 0.0,
        "pending_entry_ids": pending,
    }


# ── Transitions ──────────────────────────────────────────────────────────────


def mark_started(assignment_id, user_id, *, now=None):
    """
    assigned -> in_progress, recorded once however many first edits race.

    Runs in the caller's transaction. Returns True when this call started it.
    """
    now = now or utcnow()
    result = db.session.execute(
        update(TeamSheet)
        .where(TeamSheet.id == assignment_id, TeamSheet.status == "assigned")
        .values(
            status="in_progress",
            started_at=func.coalesce(TeamSheet.started_at, now),
            started_by=func.coalesce(TeamSheet.started_by, user_id),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return False

    assignment = db.session.get(TeamSheet, assignment_id, populate_existing=True)
    NotificationService.publish(
        "assignment.started", sheet_id=assignment.sheet_id, team_id=assignment.team_id,
        actor_user_id=user_id, payload={"assignment_id": assignment_id},
    )
    logger.info("Assignment %s started by user %s", assignment_id, user_id,
                extra={"sheet_id": assignment.sheet_id, "team_id": assignment.team_id,
                       "user_id": user_id})
    return True


def submit_assignment(sheet_id, team_id, user_id, *, now=None):
    """
    Submit a team's sheet: in_progress -> completed.

    An untouched (assigned) sheet whose responses are already complete is
    started and completed in the same transaction.

    Raises:
        NotFoundError: no assignment for (sheet, team), or unknown user.
        InvalidTransitionError: already completed, or another submit won.
        IncompleteSubmissionError: some responses fail the completion predicate.
    """
    now = now or utcnow()
    get_or_raise(User, user_id)
    assignment = get_assignment(sheet_id, team_id, for_update=True)
    if assignment.status == "completed":
        db.session.rollback()
        raise InvalidTransitionError(assignment.id, assignment.status, "completed")

    pending = pending_entry_ids(assignment.id)
    if pending:
        db.session.rollback()
        raise IncompleteSubmissionError(assignment.id, pending)

    if assignment.status == "assigned":
        mark_started(assignment.id, user_id, now=now)

    moved = _transition(assignment.id, "in_progress", "completed", {
        "completed_at": now,
        "completed_by": user_id,
    })
    if not moved:
        db.session.rollback()
        current = db.session.get(TeamSheet, assignment.id, populate_existing=True)
        raise InvalidTransitionError(assignment.id, current.status, "completed")

    NotificationService.publish(
        "assignment.submitted", sheet_id=assignment.sheet_id, team_id=assignment.team_id,
        actor_user_id=user_id, payload={"assignment_id": assignment.id},
    )
    db.session.commit()

    logger.info("Assignment %s submitted by user %s", assignment.id, user_id,
                extra={"sheet_id": sheet_id, "team_id": team_id, "user_id": user_id})
    assignment = db.session.get(TeamSheet, assignment.id, populate_existing=True)
    return {
        "assignment_id": assignment.id,
        "status": assignment.status,
        "completed_at": now.isoformat(),
        "completed_by": user_id,
    }


def unlock_assignment(sheet_id, team_id, reason, admin_user_id=None, *, now=None):
    """
    Administrative reopen: completed -> in_progress.

    Clears the completion metadata and records who unlocked it and why.
    Response values are left untouched.

    Raises:
        ValidationError: empty reason.
        NotFoundError: no assignment for (sheet, team), or unknown admin user.
        NotCompletedError: the assignment is not completed.
    """
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("An unlock reason is required", details={"missing_fields": ["reason"]})
    now = now or utcnow()

    if admin_user_id is not None:
        get_or_raise(User, admin_user_id)
    assignment = get_assignment(sheet_id, team_id, for_update=True)
    if assignment.status != "completed":
        db.session.rollback()
        raise NotCompletedError(assignment.id, assignment.status)

    moved = _transition(assignment.id, "completed", "in_progress", {
        "completed_at": None,
        "completed_by": None,
        "unlocked_at": now,
        "unlocked_by": admin_user_id,
        "unlock_reason": reason,
    })
    if not moved:
        db.session.rollback()
        current = db.session.get(TeamSheet, assignment.id, populate_existing=True)
        raise NotCompletedError(assignment.id, current.status)

    NotificationService.publish(
        "assignment.unlocked", sheet_id=assignment.sheet_id, team_id=assignment.team_id,
        actor_user_id=admin_user_id,
        payload={"assignment_id": assignment.id, "reason": reason},
    )
    db.session.commit()

    logger.warning("Assignment %s unlocked by %s: %s", assignment.id, admin_user_id, reason,
                   extra={"sheet_id": sheet_id, "team_id": team_id, "user_id": admin_user_id})
    return {
        "assignment_id": assignment.id,
        "status": "in_progress",
        "unlocked_at": now.isoformat(),
        "unlocked_by": admin_user_id,
        "unlock_reason": reason,
    }
