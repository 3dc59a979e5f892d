"""
Platform-wide exception hierarchy.

Services raise these typed errors; blueprints register one handler per
family and map it to a status code:

    NotFoundError                 -> 404
    ConflictError (and subclasses) -> 409
    ValidationError (and subclasses) -> 422

Storage-layer errors (IntegrityError, OperationalError) are never passed
through to callers; services translate them into one of the types below.

Usage:
    from advisory_tracker.core.exceptions import NotFoundError, AlreadyLockedError

    raise NotFoundError(resource="SheetEntry", resource_id=42)
    raise AlreadyLockedError(entry_id=42, held_by=7, locked_at=ts)
"""


class NotFoundError(Exception):
    """Raised when a referenced sheet, team, entry, assignment or response does not exist.

    Args:
        resource: Human-readable model name (e.g. "Sheet", "TeamSheet").
        resource_id: The key that was looked up.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when well-formed input violates a business rule.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional structured breakdown for API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when the current state of a resource forbids the operation.

    Maps to HTTP 409. The caller may retry after user action.

    Args:
        message: Human-readable explanation.
        details: Optional structured context (current holder, status, ...).
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


# ── Fan-out ──────────────────────────────────────────────────────────────────


class DistributionError(ValidationError):
    """Raised when a sheet cannot be distributed (e.g. it has no entries)."""

    def __init__(self, sheet_id: int, reason: str) -> None:
        self.sheet_id = sheet_id
        super().__init__(f"Sheet {sheet_id} cannot be distributed: {reason}",
                         details={"sheet_id": sheet_id})


# ── Entry locking ────────────────────────────────────────────────────────────


class AlreadyLockedError(ConflictError):
    """Raised when another user holds a non-stale lock on the entry."""

    def __init__(self, entry_id: int, held_by: int, locked_at=None) -> None:
        self.entry_id = entry_id
        self.held_by = held_by
        self.locked_at = locked_at
        super().__init__(
            f"Entry {entry_id} is currently locked by another user",
            details={
                "entry_id": entry_id,
                "held_by": held_by,
                "locked_at": locked_at.isoformat() if locked_at else None,
            },
        )


class NotLockHolderError(ConflictError):
    """Raised when a user releases or completes an entry locked by someone else."""

    def __init__(self, entry_id: int, user_id: int, held_by: int | None = None) -> None:
        self.entry_id = entry_id
        self.user_id = user_id
        self.held_by = held_by
        super().__init__(
            f"User {user_id} does not hold the lock on entry {entry_id}",
            details={"entry_id": entry_id, "held_by": held_by},
        )


class EntryCompletedError(ConflictError):
    """Raised when locking or completing an entry that is already completed."""

    def __init__(self, entry_id: int) -> None:
        self.entry_id = entry_id
        super().__init__(
            f"Entry {entry_id} is already completed; reopen it before editing",
            details={"entry_id": entry_id},
        )


# ── Assignment lifecycle ─────────────────────────────────────────────────────


class InvalidTransitionError(ConflictError):
    """Raised when an assignment is not in a state that allows the transition."""

    def __init__(self, assignment_id: int, current: str, target: str) -> None:
        self.assignment_id = assignment_id
        self.current_status = current
        self.target_status = target
        super().__init__(
            f"Assignment {assignment_id} cannot move from '{current}' to '{target}'",
            details={"assignment_id": assignment_id, "status": current, "target": target},
        )


class NotCompletedError(InvalidTransitionError):
    """Raised when unlocking an assignment that is not completed."""

    def __init__(self, assignment_id: int, current: str) -> None:
        super().__init__(assignment_id, current, "in_progress")


class IncompleteSubmissionError(ValidationError):
    """Raised on submit when some responses do not satisfy the completion predicate."""

    def __init__(self, assignment_id: int, pending_entry_ids: list[int]) -> None:
        self.assignment_id = assignment_id
        self.pending_entry_ids = list(pending_entry_ids)
        super().__init__(
            f"{len(self.pending_entry_ids)} entr{'y' if len(self.pending_entry_ids) == 1 else 'ies'} "
            f"not complete for assignment {assignment_id}",
            details={"pending_entry_ids": self.pending_entry_ids},
        )
