"""Authentication routes: token verification, sync-on-verify, provisioning
and self-service credential changes.

Clients sign in with the Firebase client SDK and send the resulting ID token
as ``Authorization: Bearer <token>``. Every route here is verified by the
access control gate before it runs.
"""
from __future__ import annotations
import logging

from flask import Blueprint, jsonify, request

from academy_iam.api.decorators import (
    get_gate,
    get_principal,
    get_store,
    get_synchronizer,
    json_body,
    require_principal,
)
from academy_iam.api.helpers.payloads import identity_fields
from academy_iam.core.errors import ValidationError
from academy_iam.core.models import Role
from academy_iam.core.validators import normalize_profile

bp = Blueprint("auth", __name__, url_prefix="/api/v1/auth")
logger = logging.getLogger(__name__)


def _operator(principal) -> str:
    return principal.email or principal.external_id


@bp.after_request
def add_correlation_id(response):
    """Echo the correlation ID for tracing."""
    correlation_id = request.headers.get("X-Correlation-Id")
    if correlation_id:
        response.headers["X-Correlation-Id"] = correlation_id
    return response


@bp.route("/verify", methods=["POST"])
@require_principal("auth.verify")
def verify():
    """Return the verified caller and whether a user row exists yet."""
    principal = get_principal()
    body = {"principal": principal.to_dict(), "provisioned": principal.is_provisioned}
    if principal.is_provisioned:
        row = get_store().get(principal.user_id)
        body["user"] = row.to_dict() if row else None
    return jsonify(body), 200


@bp.route("/sync-user", methods=["POST"])
@require_principal("auth.sync_user")
def sync_user():
    """Create or update the caller's own row from their profile payload.

    Body: {"firebase_uid": ..., "email": ..., "full_name": ..., ...}
    """
    principal = get_principal()
    body = identity_fields(json_body())

    outcome = get_synchronizer().sync_on_verify(
        principal.external_id,
        body,
        verified_email=principal.email,
        email_verified=principal.email_verified,
    )
    return jsonify(outcome.to_dict()), 200


@bp.route("/create-user", methods=["POST"])
@require_principal("auth.create_user")
def create_user():
    """Create a login and its user row (administrators only).

    Body: {"email", "password", "full_name", "user_type", "branch_id"?, ...}
    Admins create users in their own branch; the branch defaults to theirs.
    """
    principal = get_principal()
    body = identity_fields(json_body())
    if principal.role is Role.ADMIN and body.get("branch_id") in (None, ""):
        body["branch_id"] = principal.branch_id

    if not body.get("role"):
        raise ValidationError("User type is required")
    profile = normalize_profile(body, require_name=True)
    profile = get_gate().restrict_self_service_fields(principal, profile, None)
    get_gate().authorize(principal, "auth.create_user", branch_id=profile.get("branch_id"))

    outcome = get_synchronizer().synchronize_create(
        body.get("email"),
        body.get("password"),
        profile["role"],
        profile,
        operator=_operator(principal),
    )
    return jsonify(outcome.to_dict()), 201


@bp.route("/credentials/email", methods=["POST"])
@require_principal("auth.change_email")
def change_email():
    """Change the caller's login email; the row follows.

    Returns the refreshed ID token since the provider revokes the old one.
    """
    principal = get_principal()
    body = json_body()
    outcome = get_synchronizer().synchronize_email_change(
        principal, principal.session_token, body.get("email") or body.get("new_email")
    )
    data = outcome.to_dict()
    data["session_token"] = outcome.session_token
    return jsonify(data), 200


@bp.route("/credentials/password", methods=["POST"])
@require_principal("auth.change_password")
def change_password():
    """Change the caller's password."""
    principal = get_principal()
    body = json_body()
    outcome = get_synchronizer().synchronize_secret_change(
        principal, principal.session_token, body.get("password") or body.get("new_password")
    )
    return jsonify({"state": outcome.state.value, "session_token": outcome.session_token}), 200
