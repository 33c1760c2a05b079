"""
Health check blueprint.

Endpoints:
    GET /api/v1/health   liveness + database + integration configuration
"""

import logging
import time

from flask import Blueprint, current_app, jsonify

from groupcopilot.models import db

logger = logging.getLogger(__name__)

health_bp = Blueprint("health", __name__, url_prefix="/api/v1")


@health_bp.route("/health", methods=["GET"])
def health():
    checks = {}
    overall = True

    # ── Database ─────────────────────────────────────────────────────
    try:
        t0 = time.perf_counter()
        db.session.execute(db.text("SELECT 1"))
        db_ms = (time.perf_counter() - t0) * 1000
        checks["database"] = {"status": "ok", "latency_ms": round(db_ms, 1)}
    except Exception as exc:
        checks["database"] = {"status": "error"}
        overall = False
        logger.error("Health check — database failed: %s", exc)

    # ── Integrations (configuration only, no outbound calls) ─────────
    dispatcher = current_app.extensions["agent_dispatcher"]
    checks["generator"] = {"status": "configured" if dispatcher.gateway.available else "mock_mode"}
    checks["trello"] = {"status": "configured" if dispatcher.trello.is_configured else "not_configured"}

    return jsonify({
        "status": "ok" if overall else "degraded",
        "app": "GroupCopilot",
        "checks": checks,
    }), 200 if overall else 503
