"""
Entry Lock Manager.

Exclusive edit locks on sheet entries, shared across every server process
through the database row itself:

    unlocked ──acquire──► locked(user, ts) ──release / complete──► unlocked
                                │
                                └── age >= ENTRY_LOCK_STALE_MINUTES: any
                                    other user's acquire takes it over

Acquire, release and complete are each one conditional UPDATE; the row
count tells whether the compare-and-set won. Expiry is lazy (checked at
acquisition); ``release_expired_locks`` is an optional administrative sweep.

Every lifecycle action appends an ``entry_logs`` row.

Usage:
    from advisory_tracker.services.entry_locking import acquire_lock, complete_entry

    acquire_lock(entry_id=42, user_id=7)
    complete_entry(entry_id=42, user_id=7, payload={"current_status": "Patched", ...})
"""

import logging
from datetime import timedelta

from flask import current_app
from sqlalchemy import or_, select, update

from advisory_tracker.core.exceptions import (
    AlreadyLockedError,
    ConflictError,
    EntryCompletedError,
    InvalidTransitionError,
    NotFoundError,
    NotLockHolderError,
    ValidationError,
)
from advisory_tracker.models import db
from advisory_tracker.models.assignment import RESPONSE_FIELDS, SheetResponse, TeamSheet
from advisory_tracker.models.audit import write_entry_log
from advisory_tracker.models.sheet import Sheet, SheetEntry
from advisory_tracker.models.team import User
from advisory_tracker.services.completion import mark_started
from advisory_tracker.services.edit_tracking import track_edit
from advisory_tracker.services.field_rules import clean_changes, missing_required_fields
from advisory_tracker.services.notification import NotificationService
from advisory_tracker.utils.helpers import as_utc, get_or_raise, utcnow

logger = logging.getLogger(__name__)


# ── Staleness ────────────────────────────────────────────────────────────────


def stale_threshold() -> timedelta:
    return timedelta(minutes=current_app.config.get("ENTRY_LOCK_STALE_MINUTES", 30))


def is_stale(locked_at, now=None) -> bool:
    """A lock is stale once its age reaches the threshold."""
    if locked_at is None:
        return True
    now = now or utcnow()
    return now - as_utc(locked_at) >= stale_threshold()


def _claimable(user_id, cutoff):
    return or_(
        SheetEntry.locked_by_user_id.is_(None),
        SheetEntry.locked_by_user_id == user_id,
        SheetEntry.locked_at <= cutoff,
    )


def _reload(entry_id):
    return db.session.get(SheetEntry, entry_id, populate_existing=True)


def _conflict_for(entry_id, user_id):
    """Work out which error a lost compare-and-set should surface."""
    entry = _reload(entry_id)
    if entry is None:
        return NotFoundError(resource="SheetEntry", resource_id=entry_id)
    if entry.is_completed:
        return EntryCompletedError(entry_id)
    return AlreadyLockedError(entry_id, entry.locked_by_user_id, as_utc(entry.locked_at))


def ensure_not_locked_by_other(entry_id, user_id, *, now=None):
    """Raise AlreadyLockedError when someone else holds a live lock on the entry."""
    entry = get_or_raise(SheetEntry, entry_id)
    holder = entry.locked_by_user_id
    if holder is not None and holder != user_id and not is_stale(entry.locked_at, now):
        raise AlreadyLockedError(entry_id, holder, as_utc(entry.locked_at))
    return entry


# ── Acquire / release ────────────────────────────────────────────────────────


def acquire_lock(entry_id, user_id, *, now=None):
    """
    Lock an entry for ``user_id``.

    Succeeds when the entry is unlocked, already held by the same user
    (``locked_at`` is refreshed) or held by a stale lock.

    Raises:
        NotFoundError: unknown entry or user.
        EntryCompletedError: the entry is completed.
        AlreadyLockedError: another user holds a live lock.
    """
    now = now or utcnow()
    get_or_raise(User, user_id)
    previous = db.session.execute(
        select(SheetEntry.locked_by_user_id, SheetEntry.locked_at).where(SheetEntry.id == entry_id)
    ).first()
    if previous is None:
        raise NotFoundError(resource="SheetEntry", resource_id=entry_id)

    result = db.session.execute(
        update(SheetEntry)
        .where(
            SheetEntry.id == entry_id,
            SheetEntry.is_completed.is_(False),
            _claimable(user_id, now - stale_threshold()),
        )
        .values(locked_by_user_id=user_id, locked_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        db.session.rollback()
        raise _conflict_for(entry_id, user_id)

    holder, held_since = previous
    takeover = holder is not None and holder != user_id
    write_entry_log(
        entry_id=entry_id, action="claimed", user_id=user_id,
        details="Stale lock taken over" if takeover else "Entry locked",
        metadata={
            "previous_holder": holder,
            "previous_locked_at": as_utc(held_since).isoformat() if held_since else None,
            "stale_takeover": takeover,
        },
    )
    db.session.commit()

    if takeover:
        logger.warning("User %s took over stale lock on entry %s from user %s",
                       user_id, entry_id, holder,
                       extra={"entry_id": entry_id, "user_id": user_id})
    else:
        logger.info("Entry %s locked by user %s", entry_id, user_id,
                    extra={"entry_id": entry_id, "user_id": user_id})
    return {
        "entry_id": entry_id,
        "locked": True,
        "locked_by_user_id": user_id,
        "locked_at": now.isoformat(),
        "stale_takeover": takeover,
    }


def release_lock(entry_id, user_id):
    """
    Release a lock held by ``user_id``.

    Raises:
        NotFoundError: unknown entry.
        NotLockHolderError: the lock is held by someone else or not held.
    """
    result = db.session.execute(
        update(SheetEntry)
        .where(SheetEntry.id == entry_id, SheetEntry.locked_by_user_id == user_id)
        .values(locked_by_user_id=None, locked_at=None)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        db.session.rollback()
        entry = _reload(entry_id)
        if entry is None:
            raise NotFoundError(resource="SheetEntry", resource_id=entry_id)
        raise NotLockHolderError(entry_id, user_id, held_by=entry.locked_by_user_id)

    write_entry_log(entry_id=entry_id, action="released", user_id=user_id, details="Entry unlocked")
    db.session.commit()
    logger.info("Entry %s released by user %s", entry_id, user_id,
                extra={"entry_id": entry_id, "user_id": user_id})
    return {"entry_id": entry_id, "locked": False}


def force_release(entry_id, admin_user_id=None):
    """Administrative release, whoever holds the lock."""
    entry = _reload(entry_id)
    if entry is None:
        raise NotFoundError(resource="SheetEntry", resource_id=entry_id)
    holder = entry.locked_by_user_id
    locked_at = as_utc(entry.locked_at)

    db.session.execute(
        update(SheetEntry)
        .where(SheetEntry.id == entry_id)
        .values(locked_by_user_id=None, locked_at=None)
        .execution_options(synchronize_session=False)
    )
    write_entry_log(
        entry_id=entry_id, action="force_released", user_id=admin_user_id,
        details="Lock force-released by administrator",
        metadata={"previous_holder": holder,
                  "previous_locked_at": locked_at.isoformat() if locked_at else None},
    )
    db.session.commit()
    logger.warning("Entry %s force-released by %s (holder was %s)", entry_id, admin_user_id, holder,
                   extra={"entry_id": entry_id, "user_id": admin_user_id})
    return {"entry_id": entry_id, "locked": False, "previous_holder": holder}


# ── Completion ───────────────────────────────────────────────────────────────


def _team_response(entry, team_id, user):
    """Resolve the response the completion applies to, or None for the entry itself."""
    explicit = team_id is not None
    if not explicit:
        team_id = user.team_id
    if team_id is None:
        return None, None

    assignment = TeamSheet.query.filter_by(sheet_id=entry.sheet_id, team_id=int(team_id)).first()
    if assignment is None:
        if explicit:
            raise NotFoundError(resource="TeamSheet",
                                resource_id=f"sheet={entry.sheet_id} team={team_id}")
        return None, None

    response = SheetResponse.query.filter_by(
        team_sheet_id=assignment.id, original_entry_id=entry.id,
    ).first()
    if response is None:
        raise NotFoundError(resource="SheetResponse",
                            resource_id=f"assignment={assignment.id} entry={entry.id}")
    return assignment, response


def complete_entry(entry_id, user_id, payload, *, team_id=None, now=None):
    """
    Apply a completion payload and mark the entry completed, in one step.

    The caller must hold the lock, or the lock must be free or stale, in
    which case it is taken as part of the same conditional update. With a
    team (given, or the user's own) the payload lands on that team's
    response; otherwise on the entry baseline. The required fields are
    checked on the payload merged with the current values.

    Raises:
        NotFoundError: unknown entry, user, assignment or response.
        EntryCompletedError: already completed.
        NotLockHolderError: another user holds a live lock.
        InvalidTransitionError: the team already submitted the sheet.
        ValidationError: required fields missing (``details["missing_fields"]``).
    """
    now = now or utcnow()
    user = get_or_raise(User, user_id)
    entry = _reload(entry_id)
    if entry is None:
        raise NotFoundError(resource="SheetEntry", resource_id=entry_id)
    if entry.is_completed:
        raise EntryCompletedError(entry_id)
    holder = entry.locked_by_user_id
    if holder is not None and holder != user_id and not is_stale(entry.locked_at, now):
        raise NotLockHolderError(entry_id, user_id, held_by=holder)

    assignment, response = _team_response(entry, team_id, user)
    if assignment is not None and assignment.status == "completed":
        raise InvalidTransitionError(assignment.id, assignment.status, "in_progress")

    changes = clean_changes(payload)
    if response is not None:
        current = response.field_values()
    else:
        current = {name: getattr(entry, name) for name in RESPONSE_FIELDS}
    merged = {**current, **changes}
    missing = missing_required_fields(merged)
    if missing:
        raise ValidationError(
            "Required fields are missing",
            details={"entry_id": entry_id, "missing_fields": missing},
        )

    values = {
        "is_completed": True,
        "completed_at": now,
        "locked_by_user_id": None,
        "locked_at": None,
    }
    if response is None:
        values.update(changes)
    result = db.session.execute(
        update(SheetEntry)
        .where(
            SheetEntry.id == entry_id,
            SheetEntry.is_completed.is_(False),
            _claimable(user_id, now - stale_threshold()),
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        db.session.rollback()
        conflict = _conflict_for(entry_id, user_id)
        if isinstance(conflict, AlreadyLockedError):
            raise NotLockHolderError(entry_id, user_id, held_by=conflict.held_by)
        raise conflict

    if response is not None:
        for name, value in changes.items():
            setattr(response, name, value)
        response.updated_by = user_id
        response.updated_at = now
        db.session.flush()
        mark_started(assignment.id, user_id, now=now)

    write_entry_log(
        entry_id=entry_id, action="completed", user_id=user_id,
        details="Entry completed",
        metadata={
            "team_id": assignment.team_id if assignment else None,
            "response_id": response.id if response else None,
            "fields": sorted(changes),
        },
    )
    NotificationService.publish(
        "entry.completed", sheet_id=entry.sheet_id,
        team_id=assignment.team_id if assignment else None,
        entry_id=entry_id, actor_user_id=user_id,
        payload={"response_id": response.id if response else None},
    )
    track_edit(
        user_id=user_id, sheet_id=entry.sheet_id, entry_id=entry_id,
        response_id=response.id if response else None, now=now,
    )
    db.session.commit()

    logger.info("Entry %s completed by user %s", entry_id, user_id,
                extra={"entry_id": entry_id, "user_id": user_id, "sheet_id": entry.sheet_id})
    entry = _reload(entry_id)
    return {
        "entry": entry.to_dict(),
        "response": response.to_dict(entry) if response is not None else None,
    }


def reopen_entry(entry_id, admin_user_id=None):
    """Clear the completion flag so the entry can be locked again."""
    entry = _reload(entry_id)
    if entry is None:
        raise NotFoundError(resource="SheetEntry", resource_id=entry_id)
    if not entry.is_completed:
        raise ConflictError(f"Entry {entry_id} is not completed", details={"entry_id": entry_id})

    completed_at = as_utc(entry.completed_at)
    entry.is_completed = False
    entry.completed_at = None
    write_entry_log(
        entry_id=entry_id, action="reopened", user_id=admin_user_id,
        details="Entry reopened for editing",
        metadata={"completed_at": completed_at.isoformat() if completed_at else None},
    )
    db.session.commit()
    logger.info("Entry %s reopened by %s", entry_id, admin_user_id,
                extra={"entry_id": entry_id, "user_id": admin_user_id})
    return entry


# ── Queries ──────────────────────────────────────────────────────────────────


def available_entries(sheet_id, user_id, team_id=None, *, now=None):
    """
    Entries the user could lock right now: unlocked, self-locked or stale.

    With ``team_id``, a team that has no assignment for the sheet sees nothing.
    """
    now = now or utcnow()
    get_or_raise(Sheet, sheet_id)
    if team_id is not None:
        if TeamSheet.query.filter_by(sheet_id=sheet_id, team_id=int(team_id)).first() is None:
            return []
    return (
        SheetEntry.query
        .filter(
            SheetEntry.sheet_id == sheet_id,
            SheetEntry.is_completed.is_(False),
            _claimable(user_id, now - stale_threshold()),
        )
        .order_by(SheetEntry.row_number.asc(), SheetEntry.id.asc())
        .all()
    )


def user_locked_entries(user_id, *, now=None):
    """Live (non-stale) locks currently held by the user, newest first."""
    now = now or utcnow()
    return (
        SheetEntry.query
        .filter(
            SheetEntry.locked_by_user_id == user_id,
            SheetEntry.is_completed.is_(False),
            SheetEntry.locked_at > now - stale_threshold(),
        )
        .order_by(SheetEntry.locked_at.desc())
        .all()
    )


def release_expired_locks(*, now=None):
    """
    Administrative sweep clearing every stale lock.

    Each row is released with its own conditional update so a lock that is
    re-acquired during the sweep is left alone.
    """
    now = now or utcnow()
    cutoff = now - stale_threshold()
    stale = db.session.execute(
        select(SheetEntry.id, SheetEntry.locked_by_user_id, SheetEntry.locked_at)
        .where(SheetEntry.locked_by_user_id.is_not(None), SheetEntry.locked_at <= cutoff)
        .order_by(SheetEntry.id)
    ).all()

    released = []
    for entry_id, holder, locked_at in stale:
        result = db.session.execute(
            update(SheetEntry)
            .where(
                SheetEntry.id == entry_id,
                SheetEntry.locked_by_user_id == holder,
                SheetEntry.locked_at <= cutoff,
            )
            .values(locked_by_user_id=None, locked_at=None)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            continue
        write_entry_log(
            entry_id=entry_id, action="expired_released",
            details="Stale lock released by sweep",
            metadata={"previous_holder": holder,
                      "previous_locked_at": as_utc(locked_at).isoformat() if locked_at else None},
        )
        released.append(entry_id)
    db.session.commit()

    if released:
        logger.info("Released %d expired lock(s): %s", len(released), released)
    return {"released": len(released), "entry_ids": released}
