"""
Room blueprint.

Endpoints:
    POST /api/v1/rooms                                    create room
    GET  /api/v1/rooms/<code>                             room + members
    POST /api/v1/rooms/<code>/members                     add member
    GET  /api/v1/rooms/<code>/messages                    recent conversation
    GET  /api/v1/rooms/<code>/session                     current week session
    POST /api/v1/rooms/<code>/tasks/suggest-assignee      fair assignee suggestion
"""

import logging

from flask import Blueprint, current_app, jsonify, request

from groupcopilot.blueprints import bounded_int, current_user_id, get_dispatcher, register_error_handlers
from groupcopilot.services import room_service
from groupcopilot.services.assignee_suggestion import suggest_assignee
from groupcopilot.services.chat_service import list_messages
from groupcopilot.services.membership import get_room_by_code, load_member_context
from groupcopilot.utils.errors import E, api_error

logger = logging.getLogger(__name__)

room_bp = register_error_handlers(Blueprint("room", __name__, url_prefix="/api/v1"))


@room_bp.route("/rooms", methods=["POST"])
def create_room():
    """Body: {name, project_goal?, trello_board_id?, trello_list_id?, display_name?}"""
    data = request.get_json(silent=True) or {}
    room = room_service.create_room(data, creator_id=current_user_id())
    return jsonify(room.to_dict(include_members=True)), 201


@room_bp.route("/rooms/<code>", methods=["GET"])
def get_room(code):
    room = get_room_by_code(code)
    return jsonify(room.to_dict(include_members=True)), 200


@room_bp.route("/rooms/<code>/members", methods=["POST"])
def add_member(code):
    """Body: {user_id, display_name?, trello_member_id?}"""
    room = get_room_by_code(code)
    member = room_service.add_member(room, request.get_json(silent=True) or {})
    return jsonify(member.to_dict()), 201


@room_bp.route("/rooms/<code>/messages", methods=["GET"])
def get_messages(code):
    room = get_room_by_code(code)
    limit = bounded_int("limit", 50, maximum=200)
    return jsonify({"items": [m.to_dict() for m in list_messages(room.id, limit)]}), 200


@room_bp.route("/rooms/<code>/session", methods=["GET"])
def get_session(code):
    room = get_room_by_code(code)
    view = room_service.current_session_view(room, now=get_dispatcher().clock())
    return jsonify(view), 200


@room_bp.route("/rooms/<code>/tasks/suggest-assignee", methods=["POST"])
def suggest(code):
    """Body: {priority: low|med|high}"""
    room = get_room_by_code(code)
    user_id = current_user_id()
    members = load_member_context(room, user_id, current_app.config)
    if not members.is_member(user_id):
        return api_error(E.FORBIDDEN, "Only room members can request suggestions")

    data = request.get_json(silent=True) or {}
    suggestion = suggest_assignee(
        members,
        data.get("priority", ""),
        get_dispatcher().gateway,
        timeout_ms=current_app.config.get("ASSIGNEE_SUGGESTION_TIMEOUT_MS", 350),
    )
    return jsonify(suggestion.to_dict()), 200
