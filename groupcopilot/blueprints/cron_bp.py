"""
Scheduled-job trigger blueprint.

Endpoints:
    POST /api/v1/cron/weekly-monitor   sync cards, nudge stalled rooms
    POST /api/v1/cron/weekly-review    close out MONITOR weeks with a review

Authorized by ``Authorization: Bearer <CRON_SECRET>``. With no secret
configured the endpoints are disabled.
"""

import hmac
import logging

from flask import Blueprint, current_app, jsonify, request

from groupcopilot.blueprints import get_dispatcher, register_error_handlers
from groupcopilot.services.weekly_jobs import run_weekly_monitor, run_weekly_review
from groupcopilot.utils.errors import E, api_error

logger = logging.getLogger(__name__)

cron_bp = register_error_handlers(Blueprint("cron", __name__, url_prefix="/api/v1/cron"))


@cron_bp.before_request
def _require_cron_secret():
    secret = current_app.config.get("CRON_SECRET") or ""
    supplied = request.headers.get("Authorization", "")
    if not secret or not hmac.compare_digest(supplied, f"Bearer {secret}"):
        logger.warning("Rejected cron call endpoint=%s", request.endpoint)
        return api_error(E.UNAUTHORIZED, "Unauthorized")
    return None


@cron_bp.route("/weekly-monitor", methods=["POST"])
def weekly_monitor():
    return jsonify(run_weekly_monitor(get_dispatcher(), current_app.config)), 200


@cron_bp.route("/weekly-review", methods=["POST"])
def weekly_review():
    return jsonify(run_weekly_review(get_dispatcher(), current_app.config)), 200
