"""
Agent chat blueprint.

Endpoints:
    POST /api/v1/rooms/<code>/messages   post a chat message; the agent replies

Each call may run several phase handlers and generation calls, so this
blueprint carries the tightest rate limit.
"""

from flask import Blueprint, current_app, jsonify, request

from groupcopilot.blueprints import current_user_id, get_dispatcher, register_error_handlers
from groupcopilot.services.chat_service import handle_room_message
from groupcopilot.services.membership import get_room_by_code
from groupcopilot.utils.errors import E, api_error

agent_bp = register_error_handlers(Blueprint("agent", __name__, url_prefix="/api/v1"))


@agent_bp.route("/rooms/<code>/messages", methods=["POST"])
def post_message(code):
    """
    Body: {content}
    Headers: X-User-Id

    Returns: {intent, user_message, agent_message, state, approval_request_id}
    """
    user_id = current_user_id()
    if not user_id:
        return api_error(E.UNAUTHORIZED, "X-User-Id header is required")
    room = get_room_by_code(code)
    data = request.get_json(silent=True) or {}
    result = handle_room_message(get_dispatcher(), room, user_id, data.get("content", ""),
                                 current_app.config)
    return jsonify(result), 200
