"""Access control gate: bearer verification and table-driven authorization.

Every route names an operation; ``POLICIES`` says which roles may run it,
whether the target must sit in the caller's branch, and whether callers
without a record-store row yet (first contact) are admitted. New operations
or roles are new table entries, not new branches in route code.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from .errors import InvalidSession, Unauthenticated, Unauthorized
from .models import PRIVILEGED_FIELDS, Identity, Principal, Role

logger = logging.getLogger(__name__)

ALL_ROLES = frozenset(Role)
ELEVATED_ROLES = frozenset({Role.SUPERADMIN, Role.ADMIN})

# Fields the identity owner cannot change through the profile path
SELF_SERVICE_LOCKED = PRIVILEGED_FIELDS + ("email",)


@dataclass(frozen=True)
class Policy:
    allowed_roles: frozenset = ALL_ROLES
    branch_scope: bool = False
    allow_unprovisioned: bool = False
    allow_self: bool = False


POLICIES: dict[str, Policy] = {
    "auth.verify": Policy(allow_unprovisioned=True),
    "auth.sync_user": Policy(allow_unprovisioned=True),
    "auth.change_email": Policy(),
    "auth.change_password": Policy(allow_unprovisioned=True),
    "auth.create_user": Policy(ELEVATED_ROLES, branch_scope=True),
    "users.list": Policy(ELEVATED_ROLES, branch_scope=True),
    "users.read": Policy(ELEVATED_ROLES, branch_scope=True, allow_self=True),
    "users.create": Policy(ELEVATED_ROLES, branch_scope=True),
    "users.update": Policy(ELEVATED_ROLES, branch_scope=True, allow_self=True),
    "users.delete": Policy(frozenset({Role.SUPERADMIN})),
}


def is_branch_unscoped(principal: Principal) -> bool:
    """Superadmins, and Finance staff without a branch, see every branch."""
    if principal.role is Role.SUPERADMIN:
        return True
    return principal.role is Role.FINANCE and principal.branch_id is None


def require_same_branch_or_elevated(principal: Principal, branch_id: Optional[int]) -> None:
    if is_branch_unscoped(principal):
        return
    if principal.branch_id is None or principal.branch_id != branch_id:
        raise Unauthorized("Access denied: user belongs to another branch")


def require_self_or_elevated(principal: Principal, user_id: Optional[int]) -> None:
    if principal.role in ELEVATED_ROLES:
        return
    if principal.user_id is None or principal.user_id != user_id:
        raise Unauthorized("Access denied")


class AccessControlGate:
    """Authenticates bearer tokens and authorizes operations for a principal."""

    def __init__(self, provider, store):
        self.provider = provider
        self.store = store

    def authenticate(self, authorization_header: Optional[str]) -> Principal:
        """Resolve ``Authorization: Bearer <id token>`` to a Principal.

        Raises:
            Unauthenticated: header missing or token rejected
            ProviderUnavailable: signing keys could not be fetched
            RecordStoreUnavailable: row lookup failed
        """
        if not authorization_header or not authorization_header.startswith("Bearer "):
            raise Unauthenticated("Missing or invalid Authorization header")
        token = authorization_header[len("Bearer "):].strip()
        if not token:
            raise Unauthenticated("Missing or invalid Authorization header")

        try:
            session = self.provider.verify_session(token)
        except InvalidSession as exc:
            logger.info("Bearer token rejected: %s", exc.message)
            raise Unauthenticated("Invalid or expired token")

        row = self.store.find_by_external_id(session["external_id"])
        return Principal(
            external_id=session["external_id"],
            email=session.get("email") or (row.email if row else None),
            email_verified=bool(session.get("email_verified")),
            user_id=row.user_id if row else None,
            role=row.role if row else None,
            branch_id=row.branch_id if row else None,
            session_token=token,
        )

    def authorize(
        self,
        principal: Principal,
        operation: str,
        *,
        user_id: Optional[int] = None,
        branch_id: Optional[int] = None,
    ) -> Policy:
        """Check ``principal`` may run ``operation`` on the given target.

        ``user_id`` / ``branch_id`` describe the target row when there is one.
        """
        policy = POLICIES.get(operation)
        if policy is None:
            logger.warning("Unknown operation '%s' denied", operation)
            raise Unauthorized("Access denied")

        if not principal.is_provisioned:
            if policy.allow_unprovisioned:
                return policy
            raise Unauthorized("Account is not provisioned")

        if policy.allow_self:
            if user_id is None and branch_id is None:
                # Target not loaded yet; the handler checks again with the row
                return policy
            if user_id == principal.user_id:
                return policy

        if principal.role not in policy.allowed_roles:
            raise Unauthorized("Access denied: insufficient role")

        if policy.branch_scope and not is_branch_unscoped(principal) and principal.branch_id is None:
            raise Unauthorized("Access denied: no branch assigned")
        if policy.branch_scope and (user_id is not None or branch_id is not None):
            require_same_branch_or_elevated(principal, branch_id)
        return policy

    def branch_filter(self, principal: Principal, requested: Optional[int]) -> Optional[int]:
        """Branch a list query is confined to for ``principal``."""
        if is_branch_unscoped(principal):
            return requested
        if requested is not None and requested != principal.branch_id:
            raise Unauthorized("Access denied: user belongs to another branch")
        if principal.branch_id is None:
            raise Unauthorized("Access denied: no branch assigned")
        return principal.branch_id

    def restrict_self_service_fields(
        self,
        principal: Principal,
        payload: dict,
        current: Optional[Identity],
    ) -> dict:
        """Reject fields the caller may not set on a profile edit.

        Administrators keep everything, except that an Admin cannot grant
        Superadmin or move a user outside their own branch. Everyone else
        edits an existing row (``current``) and may resend current values of
        locked fields but not change them.
        """
        out = dict(payload)
        if principal.role in ELEVATED_ROLES:
            if principal.role is Role.ADMIN:
                if out.get("role") is Role.SUPERADMIN:
                    raise Unauthorized("Only a Superadmin can grant the Superadmin role")
                if "branch_id" in out:
                    require_same_branch_or_elevated(principal, out["branch_id"])
            return out

        if current is None:
            raise Unauthorized("Access denied")

        for name in SELF_SERVICE_LOCKED:
            if name in out and out[name] != getattr(current, name):
                logger.warning(
                    "Self-service change of '%s' rejected for external_id=%s", name, principal.external_id
                )
                raise Unauthorized(f"Field '{name}' can only be changed by an administrator")
        return out
