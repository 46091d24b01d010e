"""Health check endpoints."""
import logging

from flask import Blueprint, current_app

from academy_iam.core.errors import IdentityError

bp = Blueprint("health", __name__)
logger = logging.getLogger(__name__)


@bp.route("/health")
def health_check():
    """Basic health check endpoint."""
    return ("ok", 200, {"Content-Type": "text/plain"})


@bp.route("/ready")
def readiness_check():
    """Readiness check: the record store must answer."""
    try:
        current_app.config["IDENTITY_STORE"].ping()
    except IdentityError as exc:
        logger.warning("Readiness check failed: %s", exc.message)
        return ("not ready", 503, {"Content-Type": "text/plain"})
    return ("ready", 200, {"Content-Type": "text/plain"})
