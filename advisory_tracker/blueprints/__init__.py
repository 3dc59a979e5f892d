"""
Advisory Tracker
Blueprint registry and shared request helpers.
"""

import logging

from flask import request
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.exceptions import HTTPException

from advisory_tracker.core.exceptions import (
    AlreadyLockedError,
    ConflictError,
    DistributionError,
    EntryCompletedError,
    IncompleteSubmissionError,
    NotFoundError,
    NotLockHolderError,
    ValidationError,
)
from advisory_tracker.models import db
from advisory_tracker.utils.errors import E, api_error

logger = logging.getLogger(__name__)


def json_body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def required_int(data: dict, field: str):
    """Return (value, err_response) for a required integer field of a JSON body."""
    value = data.get(field)
    if value is None or value == "":
        return None, api_error(E.VALIDATION_REQUIRED, f"Field '{field}' is required.")
    try:
        return int(value), None
    except (TypeError, ValueError):
        return None, api_error(E.VALIDATION_INVALID, f"Field '{field}' must be an integer.")


def optional_int_arg(name: str):
    """Integer query parameter or None; raises ValidationError on garbage."""
    raw = request.args.get(name)
    if raw in (None, ""):
        return None
    try:
        return int(raw)
    except ValueError:
        raise ValidationError(f"Query parameter '{name}' must be an integer") from None


def register_error_handlers(bp):
    """Map the domain exception families of a blueprint onto JSON errors."""

    @bp.errorhandler(NotFoundError)
    def _handle_not_found(error: NotFoundError):
        return api_error(E.NOT_FOUND, str(error))

    @bp.errorhandler(AlreadyLockedError)
    def _handle_locked(error: AlreadyLockedError):
        return api_error(E.CONFLICT_LOCKED, str(error), details=error.details)

    @bp.errorhandler(NotLockHolderError)
    def _handle_not_holder(error: NotLockHolderError):
        return api_error(E.CONFLICT_NOT_HOLDER, str(error), details=error.details)

    @bp.errorhandler(EntryCompletedError)
    def _handle_completed(error: EntryCompletedError):
        return api_error(E.CONFLICT_COMPLETED, str(error), details=error.details)

    @bp.errorhandler(ConflictError)
    def _handle_conflict(error: ConflictError):
        return api_error(E.CONFLICT_STATE, str(error), details=error.details)

    @bp.errorhandler(IncompleteSubmissionError)
    def _handle_incomplete(error: IncompleteSubmissionError):
        return api_error(E.INCOMPLETE_SUBMISSION, str(error), details=error.details)

    @bp.errorhandler(DistributionError)
    def _handle_distribution(error: DistributionError):
        return api_error(E.DISTRIBUTION, str(error), details=error.details)

    @bp.errorhandler(ValidationError)
    def _handle_validation(error: ValidationError):
        return api_error(E.VALIDATION_RULE, str(error), details=error.details)

    @bp.errorhandler(SQLAlchemyError)
    def _handle_database(error: SQLAlchemyError):
        db.session.rollback()
        logger.exception("Database error in %s endpoint=%s", bp.name, request.endpoint)
        return api_error(E.DATABASE, "Database error")

    @bp.errorhandler(Exception)
    def _handle_unexpected(error: Exception):
        if isinstance(error, HTTPException):
            return error
        db.session.rollback()
        logger.exception("Unexpected error in %s endpoint=%s", bp.name, request.endpoint)
        return api_error(E.INTERNAL, "Internal server error")

    return bp
