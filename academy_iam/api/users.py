"""User management routes (record store view of identities).

Superadmins see every branch; Admins are confined to their own. Owners may
read and update their own row, minus the fields reserved to administrators.
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
from academy_iam.api.helpers.payloads import identity_fields, int_arg
from academy_iam.core.access import require_self_or_elevated
from academy_iam.core.errors import NotFound, ValidationError
from academy_iam.core.models import Role
from academy_iam.core.validators import normalize_profile

bp = Blueprint("users", __name__, url_prefix="/api/sms/users")
logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


def _operator(principal) -> str:
    return principal.email or principal.external_id


def _load_authorized(principal, user_id: int, operation: str):
    # Owner-or-admin check first so non-admins cannot probe for row existence
    require_self_or_elevated(principal, user_id)
    row = get_store().get(user_id)
    if row is None:
        raise NotFound("User not found")
    get_gate().authorize(principal, operation, user_id=row.user_id, branch_id=row.branch_id)
    return row


@bp.route("", methods=["GET"])
@require_principal("users.list")
def list_users():
    """List users with pagination.

    Query parameters:
        - branch_id: filter by branch (Admins: own branch only)
        - user_type: filter by role
        - page: 1-based page number (default: 1)
        - limit: page size (default: 20, max: 100)
    """
    principal = get_principal()
    branch_id = get_gate().branch_filter(principal, int_arg(request.args, "branch_id"))
    role = request.args.get("user_type") or request.args.get("role")
    role = Role.parse(role) if role else None
    page = int_arg(request.args, "page", 1)
    limit = int_arg(request.args, "limit", DEFAULT_PAGE_SIZE, maximum=MAX_PAGE_SIZE)

    rows, total = get_store().list(branch_id=branch_id, role=role, limit=limit, offset=(page - 1) * limit)
    return jsonify({
        "users": [r.to_dict() for r in rows],
        "total": total,
        "page": page,
        "limit": limit,
    }), 200


@bp.route("/<int:user_id>", methods=["GET"])
@require_principal("users.read")
def get_user(user_id: int):
    row = _load_authorized(get_principal(), user_id, "users.read")
    return jsonify({"user": row.to_dict()}), 200


@bp.route("", methods=["POST"])
@require_principal("users.create")
def create_user():
    """Pre-provision a user row without a login.

    The row is linked to a Firebase account the first time its owner signs
    in with the same email.
    """
    principal = get_principal()
    body = identity_fields(json_body())
    if body.get("external_id"):
        raise ValidationError("firebase_uid cannot be set directly; use /api/v1/auth/create-user")
    if principal.role is Role.ADMIN and body.get("branch_id") in (None, ""):
        body["branch_id"] = principal.branch_id
    if not body.get("role"):
        raise ValidationError("User type is required")
    if not body.get("email"):
        raise ValidationError("Email is required")

    profile = normalize_profile(body, require_name=True)
    profile = get_gate().restrict_self_service_fields(principal, profile, None)
    get_gate().authorize(principal, "users.create", branch_id=profile.get("branch_id"))

    outcome = get_synchronizer().provision_record(
        profile["email"], profile["role"], profile, operator=_operator(principal)
    )
    return jsonify(outcome.to_dict()), 201


@bp.route("/<int:user_id>", methods=["PUT"])
@require_principal("users.update")
def update_user(user_id: int):
    """Update profile fields of a user row."""
    principal = get_principal()
    row = _load_authorized(principal, user_id, "users.update")
    body = identity_fields(json_body())
    body.pop("external_id", None)
    body.pop("user_id", None)

    fields = normalize_profile(body)
    fields = get_gate().restrict_self_service_fields(principal, fields, row)
    outcome = get_synchronizer().update_profile(user_id, fields, operator=_operator(principal))
    return jsonify(outcome.to_dict()), 200


@bp.route("/<int:user_id>", methods=["DELETE"])
@require_principal("users.delete")
def delete_user(user_id: int):
    """Delete the login (best effort) and the user row (Superadmin only)."""
    principal = get_principal()
    outcome = get_synchronizer().synchronize_delete(user_id, operator=_operator(principal))
    return jsonify(outcome.to_dict()), 200
