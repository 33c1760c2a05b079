"""
Approval gate blueprint.

Routes:
  GET  /api/v1/approvals/<id>        – request, payload and tally
  POST /api/v1/approvals/<id>/vote   – cast or change a vote

A vote that resolves the gate drives the workflow forward immediately
(approve → next phase, reject → back to drafting) and the agent's reply is
posted to the room and returned as ``reply``.
"""

import logging

from flask import Blueprint, current_app, jsonify, request

from groupcopilot.blueprints import current_user_id, get_dispatcher, register_error_handlers
from groupcopilot.models.agent import VOTE_CHOICES
from groupcopilot.services import approval_gate
from groupcopilot.services.chat_service import post_message
from groupcopilot.services.membership import load_member_context
from groupcopilot.utils.errors import E, api_error

logger = logging.getLogger(__name__)

approval_bp = register_error_handlers(Blueprint("approval", __name__, url_prefix="/api/v1"))


@approval_bp.route("/approvals/<int:request_id>", methods=["GET"])
def get_approval(request_id):
    req = approval_gate.get_approval(request_id)
    members = load_member_context(req.session.room, current_user_id(), current_app.config)
    result = req.to_dict()
    result["votes"] = [v.to_dict() for v in req.votes]
    result["tally"] = approval_gate.compute_tally(req, members.member_ids, members.user_id)
    return jsonify(result), 200


@approval_bp.route("/approvals/<int:request_id>/vote", methods=["POST"])
def vote(request_id):
    """
    Body: {vote: approve|request_change, comment?}
    Headers: X-User-Id

    Returns: {resolved, status, tally, reply?}; 409 if already resolved.
    """
    user_id = current_user_id()
    if not user_id:
        return api_error(E.UNAUTHORIZED, "X-User-Id header is required")

    data = request.get_json(silent=True) or {}
    choice = (data.get("vote") or "").strip()
    if choice not in VOTE_CHOICES:
        return api_error(E.VALIDATION_REQUIRED, f"vote must be one of {sorted(VOTE_CHOICES)}")

    req = approval_gate.get_approval(request_id)
    session = req.session
    room = session.room
    members = load_member_context(room, user_id, current_app.config)

    outcome = approval_gate.cast_vote(
        request_id, user_id, choice, data.get("comment"), member_ids=members.member_ids,
    )
    result = outcome.to_dict()
    result["request_id"] = request_id

    if outcome.resolved:
        dispatch = get_dispatcher().apply_gate_resolution(session, members)
        if dispatch.reply_text:
            post_message(room.id, dispatch.reply_text, mock_mode=dispatch.mock_mode)
        result["reply"] = dispatch.to_dict()

    return jsonify(result), 200
