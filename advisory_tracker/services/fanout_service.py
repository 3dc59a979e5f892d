"""
Response Fan-out Service.

Distributes a sheet to teams: one TeamSheet assignment per team and one
SheetResponse per (assignment, entry), seeded from the entry's team-mutable
baseline. Canonical identity fields stay on the entry and are joined in on
read.

Distribution is idempotent. Teams that already hold an assignment are
skipped, and the (sheet, team) / (assignment, entry) unique constraints
turn a concurrent duplicate into a skip rather than a second copy.

Usage:
    from advisory_tracker.services.fanout_service import distribute, get_team_view

    distribute(sheet_id=5, team_ids=[1, 2], distributed_by=9)
    view = get_team_view(sheet_id=5, team_id=1)
"""

import logging

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from advisory_tracker.core.exceptions import (
    DistributionError,
    InvalidTransitionError,
    NotFoundError,
)
from advisory_tracker.models import db
from advisory_tracker.models.assignment import (
    ASSIGNMENT_STATUSES,
    RESPONSE_FIELDS,
    SheetResponse,
    TeamSheet,
)
from advisory_tracker.models.sheet import Sheet, SheetEntry
from advisory_tracker.models.team import Team, User
from advisory_tracker.services.completion import assignment_progress, get_assignment, mark_started
from advisory_tracker.services.edit_tracking import edited_entry_ids_for_team, track_edit
from advisory_tracker.services.entry_locking import ensure_not_locked_by_other
from advisory_tracker.services.field_rules import clean_changes
from advisory_tracker.services.notification import NotificationService
from advisory_tracker.utils.helpers import get_or_raise, utcnow

logger = logging.getLogger(__name__)


def _seed_response(assignment_id, entry):
    values = {name: getattr(entry, name) for name in RESPONSE_FIELDS}
    # Baseline yes/no flags default to 'N' when the sheet left them empty.
    for name in ("vendor_contacted", "compensatory_controls_provided"):
        if values[name] is None:
            values[name] = "N"
    return SheetResponse(team_sheet_id=assignment_id, original_entry_id=entry.id, **values)


# ── Distribution ─────────────────────────────────────────────────────────────


def distribute(sheet_id, team_ids, distributed_by=None):
    """
    Assign a sheet to teams and fan its entries out into responses.

    Returns:
        {"sheet_id", "assignments_created", "responses_created",
         "skipped_team_ids", "assignment_ids"}

    Raises:
        NotFoundError: unknown sheet or team, or unknown distributing user.
        DistributionError: the sheet has no entries, or no team was given.
    """
    sheet = get_or_raise(Sheet, sheet_id)
    if distributed_by is not None:
        get_or_raise(User, distributed_by)
    team_ids = list(dict.fromkeys(int(t) for t in team_ids or []))
    if not team_ids:
        raise DistributionError(sheet_id, "no teams selected")

    known = {
        t.id for t in Team.query.filter(Team.id.in_(team_ids)).all()
    }
    for team_id in team_ids:
        if team_id not in known:
            raise NotFoundError(resource="Team", resource_id=team_id)

    entries = (
        SheetEntry.query.filter_by(sheet_id=sheet.id)
        .order_by(SheetEntry.row_number.asc(), SheetEntry.id.asc())
        .all()
    )
    if not entries:
        raise DistributionError(sheet_id, "sheet has no entries")

    already = {
        row.team_id for row in TeamSheet.query.filter(
            TeamSheet.sheet_id == sheet.id, TeamSheet.team_id.in_(team_ids),
        ).all()
    }

    created = []
    skipped = []
    responses_created = 0
    for team_id in team_ids:
        if team_id in already:
            skipped.append(team_id)
            continue
        try:
            with db.session.begin_nested():
                assignment = TeamSheet(
                    sheet_id=sheet.id, team_id=team_id, status="assigned",
                    assigned_by=distributed_by,
                )
                db.session.add(assignment)
                db.session.flush()
                db.session.add_all([_seed_response(assignment.id, e) for e in entries])
        except IntegrityError:
            logger.info("Sheet %s already distributed to team %s", sheet_id, team_id,
                        extra={"sheet_id": sheet_id, "team_id": team_id})
            skipped.append(team_id)
            continue
        created.append(assignment)
        responses_created += len(entries)
        NotificationService.publish(
            "sheet.distributed", sheet_id=sheet.id, team_id=team_id,
            actor_user_id=distributed_by,
            payload={"assignment_id": assignment.id, "entries": len(entries)},
        )

    sheet.status = "distributed"
    sheet.distributed_at = sheet.distributed_at or utcnow()
    db.session.commit()

    logger.info(
        "Distributed sheet %s to %d team(s), %d response(s); skipped %s",
        sheet_id, len(created), responses_created, skipped,
        extra={"sheet_id": sheet_id},
    )
    return {
        "sheet_id": sheet.id,
        "assignments_created": len(created),
        "responses_created": responses_created,
        "skipped_team_ids": skipped,
        "assignment_ids": [a.id for a in created],
    }


def distribute_to_all_teams(sheet_id, distributed_by=None):
    """Distribute to every active team."""
    team_ids = [t.id for t in Team.query.filter_by(is_active=True).order_by(Team.id).all()]
    if not team_ids:
        raise DistributionError(sheet_id, "no active teams")
    return distribute(sheet_id, team_ids, distributed_by=distributed_by)


def backfill_responses(sheet_id):
    """
    Create the responses missing for (assignment, entry) pairs.

    Covers entries added after distribution. Existing responses are never
    touched.
    """
    sheet = get_or_raise(Sheet, sheet_id)
    entries = SheetEntry.query.filter_by(sheet_id=sheet.id).all()
    assignments = TeamSheet.query.filter_by(sheet_id=sheet.id).all()

    created = 0
    for assignment in assignments:
        existing = set(db.session.execute(
            select(SheetResponse.original_entry_id)
            .where(SheetResponse.team_sheet_id == assignment.id)
        ).scalars())
        missing = [e for e in entries if e.id not in existing]
        if not missing:
            continue
        try:
            with db.session.begin_nested():
                db.session.add_all([_seed_response(assignment.id, e) for e in missing])
        except IntegrityError:
            logger.warning("Concurrent backfill for assignment %s; skipped", assignment.id,
                           extra={"sheet_id": sheet.id, "team_id": assignment.team_id})
            continue
        created += len(missing)
    db.session.commit()

    logger.info("Backfilled %d response(s) for sheet %s", created, sheet_id,
                extra={"sheet_id": sheet_id})
    return {"sheet_id": sheet.id, "responses_created": created}


# ── Team view ────────────────────────────────────────────────────────────────


def team_rows(assignment_id):
    """(SheetResponse, SheetEntry) pairs of an assignment in sheet order."""
    return db.session.execute(
        select(SheetResponse, SheetEntry)
        .join(SheetEntry, SheetEntry.id == SheetResponse.original_entry_id)
        .where(SheetResponse.team_sheet_id == assignment_id)
        .order_by(SheetEntry.row_number.asc(), SheetEntry.id.asc())
    ).all()


def get_team_view(sheet_id, team_id):
    """
    One team's working view of a sheet.

    Each response row carries the team's own values, the entry's read-only
    canonical fields and the lock / completion overlay.
    """
    sheet = get_or_raise(Sheet, sheet_id)
    assignment = get_assignment(sheet.id, team_id)
    rows = team_rows(assignment.id)
    return {
        "sheet": sheet.to_dict(),
        "assignment": assignment.to_dict(),
        "responses": [response.to_dict(entry) for response, entry in rows],
        "progress": assignment_progress(assignment.id),
        "edited_entry_ids": edited_entry_ids_for_team(team_id, sheet.id),
    }


def update_response(response_id, team_id, user_id, changes, *, now=None):
    """
    Apply a team member's edits to one response.

    Raises:
        NotFoundError: unknown response or user, or the response belongs to another team.
        ValidationError: canonical, unknown or malformed fields.
        InvalidTransitionError: the team already submitted the sheet.
        AlreadyLockedError: another user holds the entry lock.
    """
    now = now or utcnow()
    response = get_or_raise(SheetResponse, response_id)
    get_or_raise(User, user_id)
    assignment = response.assignment
    if team_id is not None and assignment.team_id != int(team_id):
        raise NotFoundError(resource="SheetResponse", resource_id=response_id)
    if assignment.status == "completed":
        raise InvalidTransitionError(assignment.id, assignment.status, "in_progress")

    cleaned = clean_changes(changes)
    ensure_not_locked_by_other(response.original_entry_id, user_id, now=now)

    for name, value in cleaned.items():
        setattr(response, name, value)
    response.updated_by = user_id
    response.updated_at = now
    db.session.flush()

    mark_started(assignment.id, user_id, now=now)
    track_edit(
        user_id=user_id, sheet_id=assignment.sheet_id,
        entry_id=response.original_entry_id, response_id=response.id, now=now,
    )
    db.session.commit()

    logger.info(
        "Response %s updated by user %s (%s)", response.id, user_id, ", ".join(sorted(cleaned)),
        extra={"sheet_id": assignment.sheet_id, "team_id": assignment.team_id, "user_id": user_id},
    )
    return response.to_dict(response.original_entry)


# ── Overview ─────────────────────────────────────────────────────────────────


def get_sheet_overview(sheet_id):
    """Per-team status and progress of one sheet, for administrators."""
    sheet = get_or_raise(Sheet, sheet_id)
    assignments = (
        TeamSheet.query.filter_by(sheet_id=sheet.id)
        .order_by(TeamSheet.team_id.asc())
        .all()
    )
    teams = []
    for assignment in assignments:
        item = assignment.to_dict()
        item["progress"] = assignment_progress(assignment.id)
        teams.append(item)

    counts = dict.fromkeys(ASSIGNMENT_STATUSES, 0)
    for assignment in assignments:
        counts[assignment.status] += 1

    return {
        "sheet": sheet.to_dict(),
        "entry_count": sheet.entries.count(),
        "teams": teams,
        "status_counts": counts,
    }
