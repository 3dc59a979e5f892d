"""
Sheet workflow blueprint.

Distribution, team views, response edits and the submit / unlock lifecycle.

Endpoints:
    POST   /api/v1/sheets/<sid>/entries/import        Body: {headers, rows}
    POST   /api/v1/sheets/<sid>/distribute            Body: {team_ids | all_teams, distributed_by}
    POST   /api/v1/sheets/<sid>/backfill
    GET    /api/v1/sheets/<sid>/overview
    GET    /api/v1/sheets/<sid>/teams/<tid>
    GET    /api/v1/sheets/<sid>/teams/<tid>/export
    PUT    /api/v1/sheets/<sid>/teams/<tid>/responses/<rid>   Body: {user_id, <fields>}
    POST   /api/v1/sheets/<sid>/teams/<tid>/submit    Body: {user_id}
    PUT    /api/v1/sheets/<sid>/teams/<tid>/unlock    Body: {reason, admin_user_id}

Layer contract:
    - Blueprint: parse + validate input, call service, return JSON response.
    - NO db.session calls here; all writes are owned by the services.
"""

import io
import logging

from flask import Blueprint, jsonify, send_file

from advisory_tracker.blueprints import json_body, register_error_handlers, required_int
from advisory_tracker.core.exceptions import NotFoundError
from advisory_tracker.models.assignment import SheetResponse
from advisory_tracker.services import completion, entry_service, fanout_service
from advisory_tracker.services.export_service import export_team_view_xlsx
from advisory_tracker.utils.errors import E, api_error
from advisory_tracker.utils.helpers import get_or_raise

logger = logging.getLogger(__name__)

sheets_bp = Blueprint("sheets", __name__, url_prefix="/api/v1")
register_error_handlers(sheets_bp)


# ── Ingestion & distribution ─────────────────────────────────────────────────


@sheets_bp.route("/sheets/<int:sheet_id>/entries/import", methods=["POST"])
def import_entries(sheet_id: int):
    data = json_body()
    if not isinstance(data.get("rows"), list):
        return api_error(E.VALIDATION_REQUIRED, "Field 'rows' must be a list.")
    result = entry_service.create_entries_from_dataset(sheet_id, data)
    return jsonify(result), 201


@sheets_bp.route("/sheets/<int:sheet_id>/distribute", methods=["POST"])
def distribute_sheet(sheet_id: int):
    """Distribute to the listed teams, or to every active team with all_teams=true."""
    data = json_body()
    distributed_by = data.get("distributed_by")
    if data.get("all_teams"):
        result = fanout_service.distribute_to_all_teams(sheet_id, distributed_by=distributed_by)
        return jsonify(result), 201

    team_ids = data.get("team_ids")
    if not isinstance(team_ids, list) or not team_ids:
        return api_error(E.VALIDATION_REQUIRED, "Field 'team_ids' must be a non-empty list.")
    try:
        team_ids = [int(t) for t in team_ids]
    except (TypeError, ValueError):
        return api_error(E.VALIDATION_INVALID, "Team ids must be integers.")

    result = fanout_service.distribute(sheet_id, team_ids, distributed_by=distributed_by)
    return jsonify(result), 201


@sheets_bp.route("/sheets/<int:sheet_id>/backfill", methods=["POST"])
def backfill(sheet_id: int):
    return jsonify(fanout_service.backfill_responses(sheet_id)), 200


@sheets_bp.route("/sheets/<int:sheet_id>/overview", methods=["GET"])
def sheet_overview(sheet_id: int):
    return jsonify(fanout_service.get_sheet_overview(sheet_id)), 200


# ── Team view ────────────────────────────────────────────────────────────────


@sheets_bp.route("/sheets/<int:sheet_id>/teams/<int:team_id>", methods=["GET"])
def team_view(sheet_id: int, team_id: int):
    return jsonify(fanout_service.get_team_view(sheet_id, team_id)), 200


@sheets_bp.route("/sheets/<int:sheet_id>/teams/<int:team_id>/export", methods=["GET"])
def export_team_view(sheet_id: int, team_id: int):
    content = export_team_view_xlsx(sheet_id, team_id)
    return send_file(
        io.BytesIO(content),
        mimetype="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        as_attachment=True,
        download_name=f"sheet_{sheet_id}_team_{team_id}.xlsx",
    )


@sheets_bp.route(
    "/sheets/<int:sheet_id>/teams/<int:team_id>/responses/<int:response_id>",
    methods=["PUT"],
)
def update_response(sheet_id: int, team_id: int, response_id: int):
    data = json_body()
    user_id, err = required_int(data, "user_id")
    if err:
        return err

    response = get_or_raise(SheetResponse, response_id)
    if response.assignment.sheet_id != sheet_id:
        raise NotFoundError(resource="SheetResponse", resource_id=response_id)

    changes = {k: v for k, v in data.items() if k != "user_id"}
    if not changes:
        return api_error(E.VALIDATION_REQUIRED, "No fields to update.")
    result = fanout_service.update_response(response_id, team_id, user_id, changes)
    return jsonify(result), 200


# ── Lifecycle ────────────────────────────────────────────────────────────────


@sheets_bp.route("/sheets/<int:sheet_id>/teams/<int:team_id>/submit", methods=["POST"])
def submit_sheet(sheet_id: int, team_id: int):
    data = json_body()
    user_id, err = required_int(data, "user_id")
    if err:
        return err
    return jsonify(completion.submit_assignment(sheet_id, team_id, user_id)), 200


@sheets_bp.route("/sheets/<int:sheet_id>/teams/<int:team_id>/unlock", methods=["PUT"])
def unlock_sheet(sheet_id: int, team_id: int):
    """Administrative reopen of a submitted sheet. A reason is mandatory."""
    data = json_body()
    reason = (data.get("reason") or "").strip()
    if not reason:
        return api_error(E.VALIDATION_REQUIRED, "Field 'reason' is required.")
    result = completion.unlock_assignment(
        sheet_id, team_id, reason, admin_user_id=data.get("admin_user_id"),
    )
    return jsonify(result), 200
