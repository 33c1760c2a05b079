"""JSON error bodies shared by every blueprint.

    from groupcopilot.utils.errors import api_error, E

    return api_error(E.NOT_FOUND, "Room not found")
    return api_error(E.CONFLICT_STATE, "Approval already resolved", details={"status": "approved"})

Body shape: ``{"error": <message>, "code": <E.*>, "details"?: {...}, "request_id"?: ...}``
"""

from __future__ import annotations

from flask import g, has_request_context, jsonify


class E:
    """Error codes clients can branch on; the HTTP status follows from the code."""

    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"   # 400: missing/unknown input choice
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"     # 422: well-formed but rejected by a service
    INVALID_TRANSITION = "ERR_INVALID_TRANSITION"     # 422: illegal workflow move

    UNAUTHORIZED = "ERR_UNAUTHORIZED"
    FORBIDDEN = "ERR_FORBIDDEN"
    NOT_FOUND = "ERR_NOT_FOUND"

    CONFLICT_DUPLICATE = "ERR_CONFLICT_DUPLICATE"
    CONFLICT_STATE = "ERR_CONFLICT_STATE"             # gate already resolved
    CONFLICT_CONCURRENT = "ERR_CONFLICT_CONCURRENT"   # lost an optimistic version race

    INTERNAL = "ERR_INTERNAL"


_STATUS_BY_CODE: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 422,
    E.INVALID_TRANSITION: 422,
    E.UNAUTHORIZED: 401,
    E.FORBIDDEN: 403,
    E.NOT_FOUND: 404,
    E.CONFLICT_DUPLICATE: 409,
    E.CONFLICT_STATE: 409,
    E.CONFLICT_CONCURRENT: 409,
    E.INTERNAL: 500,
}


def api_error(code: str, message: str, *, status: int | None = None, details: dict | None = None):
    """Build ``(response, status)`` for a view or error handler.

    ``status`` overrides the code's default; unknown codes map to 400.
    """
    body: dict = {"error": message, "code": code}
    if details:
        body["details"] = details
    if has_request_context() and g.get("request_id"):
        body["request_id"] = g.request_id
    return jsonify(body), status or _STATUS_BY_CODE.get(code, 400)
