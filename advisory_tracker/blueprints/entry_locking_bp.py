"""
Entry locking blueprint.

Endpoints:
    POST   /api/v1/entries/<eid>/lock            Body: {user_id}
    POST   /api/v1/entries/<eid>/unlock          Body: {user_id}
    POST   /api/v1/entries/<eid>/force-unlock    Body: {admin_user_id}
    POST   /api/v1/entries/<eid>/complete        Body: {user_id, team_id?, <fields>}
    POST   /api/v1/entries/<eid>/reopen          Body: {admin_user_id}
    POST   /api/v1/entries/<eid>/reset           Body: {admin_user_id}
    DELETE /api/v1/entries/<eid>
    GET    /api/v1/sheets/<sid>/entries
    POST   /api/v1/sheets/<sid>/entries          Body: {<fields>}
    GET    /api/v1/sheets/<sid>/available-entries?user_id=&team_id=
    GET    /api/v1/users/<uid>/locked-entries
"""

import logging

from flask import Blueprint, jsonify, request

from advisory_tracker.blueprints import (
    json_body,
    optional_int_arg,
    register_error_handlers,
    required_int,
)
from advisory_tracker.services import entry_locking, entry_service
from advisory_tracker.utils.errors import E, api_error

logger = logging.getLogger(__name__)

entry_locking_bp = Blueprint("entry_locking", __name__, url_prefix="/api/v1")
register_error_handlers(entry_locking_bp)


# ── Lock lifecycle ───────────────────────────────────────────────────────────


@entry_locking_bp.route("/entries/<int:entry_id>/lock", methods=["POST"])
def lock_entry(entry_id: int):
    user_id, err = required_int(json_body(), "user_id")
    if err:
        return err
    return jsonify(entry_locking.acquire_lock(entry_id, user_id)), 200


@entry_locking_bp.route("/entries/<int:entry_id>/unlock", methods=["POST"])
def unlock_entry(entry_id: int):
    user_id, err = required_int(json_body(), "user_id")
    if err:
        return err
    return jsonify(entry_locking.release_lock(entry_id, user_id)), 200


@entry_locking_bp.route("/entries/<int:entry_id>/force-unlock", methods=["POST"])
def force_unlock_entry(entry_id: int):
    data = json_body()
    return jsonify(entry_locking.force_release(entry_id, data.get("admin_user_id"))), 200


@entry_locking_bp.route("/entries/<int:entry_id>/complete", methods=["POST"])
def complete_entry(entry_id: int):
    """Complete an entry with the submitted field values (lock taken if free)."""
    data = json_body()
    user_id, err = required_int(data, "user_id")
    if err:
        return err
    team_id = data.get("team_id")
    payload = {k: v for k, v in data.items() if k not in ("user_id", "team_id")}
    result = entry_locking.complete_entry(entry_id, user_id, payload, team_id=team_id)
    return jsonify(result), 200


@entry_locking_bp.route("/entries/<int:entry_id>/reopen", methods=["POST"])
def reopen_entry(entry_id: int):
    data = json_body()
    entry = entry_locking.reopen_entry(entry_id, data.get("admin_user_id"))
    return jsonify(entry.to_dict()), 200


# ── Entry administration ─────────────────────────────────────────────────────


@entry_locking_bp.route("/entries/<int:entry_id>/reset", methods=["POST"])
def reset_entry(entry_id: int):
    data = json_body()
    entry = entry_service.reset_entry(entry_id, data.get("admin_user_id"))
    return jsonify(entry.to_dict()), 200


@entry_locking_bp.route("/entries/<int:entry_id>", methods=["DELETE"])
def delete_entry(entry_id: int):
    return jsonify(entry_service.delete_entry(entry_id)), 200


@entry_locking_bp.route("/sheets/<int:sheet_id>/entries", methods=["GET"])
def list_entries(sheet_id: int):
    completed = request.args.get("completed")
    if completed is not None:
        completed = completed.lower() in ("1", "true", "yes")
    entries = entry_service.list_entries(
        sheet_id, risk_level=request.args.get("risk_level"), completed=completed,
    )
    return jsonify({"items": [e.to_dict() for e in entries], "total": len(entries)}), 200


@entry_locking_bp.route("/sheets/<int:sheet_id>/entries", methods=["POST"])
def add_entry(sheet_id: int):
    data = json_body()
    if not data:
        return api_error(E.VALIDATION_REQUIRED, "Entry fields are required.")
    entry = entry_service.add_entry(sheet_id, data)
    return jsonify(entry.to_dict()), 201


# ── Queries ──────────────────────────────────────────────────────────────────


@entry_locking_bp.route("/sheets/<int:sheet_id>/available-entries", methods=["GET"])
def available_entries(sheet_id: int):
    user_id = optional_int_arg("user_id")
    if user_id is None:
        return api_error(E.VALIDATION_REQUIRED, "Query parameter 'user_id' is required.")
    entries = entry_locking.available_entries(sheet_id, user_id, team_id=optional_int_arg("team_id"))
    return jsonify({"items": [e.to_dict() for e in entries], "total": len(entries)}), 200


@entry_locking_bp.route("/users/<int:user_id>/locked-entries", methods=["GET"])
def user_locked_entries(user_id: int):
    entries = entry_locking.user_locked_entries(user_id)
    return jsonify({"items": [e.to_dict() for e in entries], "total": len(entries)}), 200
