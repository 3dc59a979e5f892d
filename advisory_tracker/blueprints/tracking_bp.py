"""
Edit tracking and event outbox blueprint.

Endpoints:
    GET    /api/v1/sheets/<sid>/edited-entries?user_id=|team_id=
    GET    /api/v1/users/<uid>/edit-stats?sheet_id=
    GET    /api/v1/sheets/<sid>/events?team_id=
    GET    /api/v1/events/pending?limit=&type=
    POST   /api/v1/events/delivered              Body: {ids: [...]}
"""

import logging

from flask import Blueprint, jsonify, request

from advisory_tracker.blueprints import json_body, optional_int_arg, register_error_handlers
from advisory_tracker.models.sheet import Sheet
from advisory_tracker.services import edit_tracking
from advisory_tracker.services.notification import NotificationService
from advisory_tracker.utils.errors import E, api_error
from advisory_tracker.utils.helpers import get_or_raise

logger = logging.getLogger(__name__)

tracking_bp = Blueprint("tracking", __name__, url_prefix="/api/v1")
register_error_handlers(tracking_bp)


@tracking_bp.route("/sheets/<int:sheet_id>/edited-entries", methods=["GET"])
def edited_entries(sheet_id: int):
    """Entry ids edited by a user or by any member of a team."""
    get_or_raise(Sheet, sheet_id)
    user_id = optional_int_arg("user_id")
    team_id = optional_int_arg("team_id")
    if user_id is not None:
        ids = edit_tracking.edited_entry_ids_for_user(user_id, sheet_id)
    elif team_id is not None:
        ids = edit_tracking.edited_entry_ids_for_team(team_id, sheet_id)
    else:
        return api_error(E.VALIDATION_REQUIRED, "Query parameter 'user_id' or 'team_id' is required.")
    return jsonify({"sheet_id": sheet_id, "entry_ids": ids}), 200


@tracking_bp.route("/users/<int:user_id>/edit-stats", methods=["GET"])
def edit_stats(user_id: int):
    return jsonify(edit_tracking.user_edit_stats(user_id, sheet_id=optional_int_arg("sheet_id"))), 200


@tracking_bp.route("/sheets/<int:sheet_id>/events", methods=["GET"])
def sheet_events(sheet_id: int):
    """Event history of one sheet, optionally narrowed to a team."""
    get_or_raise(Sheet, sheet_id)
    events = NotificationService.list_for_sheet(sheet_id, team_id=optional_int_arg("team_id"))
    return jsonify({"items": [e.to_dict() for e in events], "total": len(events)}), 200


@tracking_bp.route("/events/pending", methods=["GET"])
def pending_events():
    limit = optional_int_arg("limit") or 100
    events = NotificationService.pending(limit=min(limit, 1000), event_type=request.args.get("type"))
    return jsonify({"items": [e.to_dict() for e in events], "total": len(events)}), 200


@tracking_bp.route("/events/delivered", methods=["POST"])
def mark_events_delivered():
    ids = json_body().get("ids")
    if not isinstance(ids, list):
        return api_error(E.VALIDATION_REQUIRED, "Field 'ids' must be a list.")
    try:
        ids = [int(i) for i in ids]
    except (TypeError, ValueError):
        return api_error(E.VALIDATION_INVALID, "Event ids must be integers.")
    return jsonify({"marked": NotificationService.mark_delivered(ids)}), 200
