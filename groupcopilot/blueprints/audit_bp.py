"""
Audit feed blueprint.

Endpoints:
    GET /api/v1/rooms/<code>/audit   newest first; ?limit=≤100&before_id=<cursor>
"""

from flask import Blueprint, jsonify, request

from groupcopilot.blueprints import bounded_int, register_error_handlers
from groupcopilot.models.audit import AuditLog
from groupcopilot.services.membership import get_room_by_code

audit_bp = register_error_handlers(Blueprint("audit", __name__, url_prefix="/api/v1"))


@audit_bp.route("/rooms/<code>/audit", methods=["GET"])
def list_audit(code):
    room = get_room_by_code(code)
    limit = bounded_int("limit", 50, maximum=100)
    query = AuditLog.query.filter_by(room_id=room.id)

    before_id = request.args.get("before_id", type=int)
    if before_id:
        query = query.filter(AuditLog.id < before_id)
    action = request.args.get("action")
    if action:
        query = query.filter_by(action=action)

    items = query.order_by(AuditLog.id.desc()).limit(limit + 1).all()
    has_more = len(items) > limit
    items = items[:limit]
    return jsonify({
        "items": [entry.to_dict() for entry in items],
        "next_before_id": items[-1].id if has_more and items else None,
    }), 200
