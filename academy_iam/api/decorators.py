"""
Flask decorators for authentication and authorization.

Every protected route runs through the access control gate: the bearer
token is verified, the caller is resolved to a Principal, and the route's
operation is checked against the policy table before the handler runs.
Target-specific checks (self, branch) happen in the handler once the
target row is known.
"""

import logging
from functools import wraps
from typing import Optional

from flask import current_app, g, request

from academy_iam.core.errors import ValidationError
from academy_iam.core.models import Principal

logger = logging.getLogger(__name__)


def get_gate():
    return current_app.config["ACCESS_GATE"]


def get_synchronizer():
    return current_app.config["SYNCHRONIZER"]


def get_store():
    return current_app.config["IDENTITY_STORE"]


def require_principal(operation: str):
    """
    Decorator requiring a verified caller allowed to run ``operation``.

    Sets ``g.principal``. Authentication and authorization failures raise
    IdentityError subclasses, rendered by the registered error handlers.

    Example:
        @bp.route("/api/sms/users", methods=["GET"])
        @require_principal("users.list")
        def list_users():
            ...
    """
    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            gate = get_gate()
            principal = gate.authenticate(request.headers.get("Authorization"))
            gate.authorize(principal, operation)
            g.principal = principal
            logger.debug("Authorized %s for external_id=%s", operation, principal.external_id)
            return fn(*args, **kwargs)
        return wrapper
    return decorator


def get_principal() -> Optional[Principal]:
    """
    Get the Principal attached by @require_principal.

    Returns:
        Principal, or None outside a protected route
    """
    return getattr(g, "principal", None)


def json_body() -> dict:
    """Request body as a dict; ValidationError when it is not a JSON object."""
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object")
    return payload
