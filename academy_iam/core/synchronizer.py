"""Cross-system identity operations with explicit compensation.

The credential provider and the record store cannot share a transaction, so
each operation is a short saga: the steps run in a fixed order and a failed
later step triggers a compensating action on the earlier one. Every outcome
carries a SyncState so reconciliation tooling can tell a clean rollback from
a state that needs an operator.

Operations:
- synchronize_create: provider credential first, then the row; credential
  deleted again if the row cannot be written
- synchronize_delete: provider credential (best effort), then the row
- sync_on_verify: read-repair of the row from a verified caller's payload
- synchronize_email_change / synchronize_secret_change: self-service
  credential updates, mirrored into the row where the row holds a copy
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Optional, Union

from scripts import audit

from .errors import (
    Conflict,
    IdentityError,
    IdentityMismatch,
    NotFound,
    PartialDelete,
    RecordStoreUnavailable,
    SyncState,
    ValidationError,
)
from .models import PRIVILEGED_FIELDS, Identity, Principal, Role
from .validators import normalize_profile, validate_email, validate_secret

logger = logging.getLogger(__name__)


@dataclass
class SyncOutcome:
    """Successful result of a synchronizer operation."""

    state: SyncState
    identity: Optional[Identity]
    warnings: list[str] = field(default_factory=list)
    session_token: Optional[str] = None

    def to_dict(self) -> dict:
        data = {
            "state": self.state.value,
            "identity": self.identity.to_dict() if self.identity else None,
        }
        if self.warnings:
            data["warnings"] = list(self.warnings)
        return data


class IdentitySynchronizer:
    """Keeps provider credentials and record-store rows consistent.

    Args:
        provider: CredentialProvider (or a fake with the same methods)
        store: Identity record store (PostgreSQL or in-memory)
        audit_sink: Callable with the signature of audit.safe_log_sync_event
        default_role: Role given to rows created on first verified contact
    """

    def __init__(
        self,
        provider,
        store,
        *,
        audit_sink: Optional[Callable[..., bool]] = None,
        default_role: Role = Role.STUDENT,
    ):
        self.provider = provider
        self.store = store
        self._audit = audit_sink or audit.safe_log_sync_event
        self.default_role = default_role

    # ─────────────────────────────────────────────────────────────────────────
    # Operation A: administrator-provisioned create
    # ─────────────────────────────────────────────────────────────────────────
    def synchronize_create(
        self,
        email: str,
        secret: str,
        role,
        profile: Optional[dict] = None,
        *,
        operator: str = "system",
    ) -> SyncOutcome:
        """Create the provider credential, then the row that references it.

        Raises:
            IdentityError: with state Aborted (nothing written), RolledBack
                (credential removed again) or Inconsistent (credential or
                orphan row may remain)
        """
        email = validate_email(email)
        validate_secret(secret)
        role = Role.parse(role)
        fields = normalize_profile(profile or {}, require_name=True)
        fields.pop("email", None)
        fields.pop("role", None)

        external_id = self.provider.create_credential(email, secret)

        try:
            identity = self.store.insert(Identity(email=email, role=role, external_id=external_id, **fields))
        except IdentityError as exc:
            self._compensate_create(exc, external_id, email, operator)
            raise

        logger.info("Identity created (user_id=%s, external_id=%s)", identity.user_id, external_id)
        self._audit(
            "identity_create",
            email,
            operator=operator,
            external_id=external_id,
            state=SyncState.COMMITTED.value,
            details={"user_id": identity.user_id, "role": role.value, "branch_id": identity.branch_id},
        )
        return SyncOutcome(SyncState.COMMITTED, identity)

    def _compensate_create(self, error: IdentityError, external_id: str, email: str, operator: str) -> None:
        """Undo step 1 after the insert failed; sets ``error.state``."""
        try:
            self.provider.delete_credential(external_id)
        except IdentityError as comp_exc:
            self._mark_inconsistent(
                error, "create", email, external_id, operator,
                reason=f"credential delete failed: {comp_exc.kind}",
            )
            return

        if isinstance(error, RecordStoreUnavailable):
            # The insert may have committed before the connection dropped
            try:
                landed = self.store.find_by_external_id(external_id) is not None
            except IdentityError:
                landed = None
            if landed is not False:
                reason = "orphan row without credential" if landed else "insert outcome unconfirmed"
                self._mark_inconsistent(error, "create", email, external_id, operator, reason=reason)
                return

        error.state = SyncState.ROLLED_BACK
        error.external_id = external_id
        logger.warning("Create rolled back (external_id=%s): %s", external_id, error.kind)
        self._audit(
            "identity_rolled_back",
            email,
            operator=operator,
            external_id=external_id,
            state=SyncState.ROLLED_BACK.value,
            details={"operation": "create", "error": error.kind},
            success=False,
        )

    def _mark_inconsistent(
        self,
        error: IdentityError,
        operation: str,
        subject: str,
        external_id: Optional[str],
        operator: str,
        *,
        reason: str,
    ) -> None:
        error.state = SyncState.INCONSISTENT
        error.external_id = external_id
        logger.critical(
            "Identity left inconsistent; reconciliation required "
            "(operation=%s, external_id=%s, subject=%s, error=%s, reason=%s)",
            operation, external_id, subject, error.kind, reason,
        )
        self._audit(
            "identity_inconsistent",
            subject,
            operator=operator,
            external_id=external_id,
            state=SyncState.INCONSISTENT.value,
            details={"operation": operation, "error": error.kind, "reason": reason},
            success=False,
        )

    # ─────────────────────────────────────────────────────────────────────────
    # Operation B: administrator delete
    # ─────────────────────────────────────────────────────────────────────────
    def synchronize_delete(self, key: Union[int, str], *, operator: str = "system") -> SyncOutcome:
        """Delete the credential (best effort), then the row.

        ``key`` is a row key (int) or an external id (str). Safe to call
        again after a PartialDelete: the credential delete is idempotent.
        """
        identity = self.store.get(key) if isinstance(key, int) else self.store.find_by_external_id(key)
        if identity is None:
            raise NotFound("User not found")

        warnings: list[str] = []
        credential_removed = True
        if identity.external_id:
            try:
                self.provider.delete_credential(identity.external_id)
            except IdentityError as exc:
                credential_removed = False
                warnings.append(f"Credential cleanup skipped ({exc.kind}); provider identity may still exist")
                logger.warning(
                    "Credential delete failed for %s, continuing with row delete: %s",
                    identity.external_id, exc,
                )
                self._audit(
                    "credential_cleanup_failed",
                    identity.email,
                    operator=operator,
                    external_id=identity.external_id,
                    state=SyncState.ABORTED.value,
                    details={"user_id": identity.user_id, "error": exc.kind},
                    success=False,
                )

        try:
            self.store.delete_row(identity.user_id)
        except NotFound:
            warnings.append("Row already removed")
        except IdentityError as exc:
            if not credential_removed:
                raise
            logger.critical(
                "Partial delete: credential removed but row survives "
                "(user_id=%s, external_id=%s, error=%s)",
                identity.user_id, identity.external_id, exc.kind,
            )
            self._audit(
                "identity_partial_delete",
                identity.email,
                operator=operator,
                external_id=identity.external_id,
                state=SyncState.PARTIAL_DELETE.value,
                details={"user_id": identity.user_id, "error": exc.kind},
                success=False,
            )
            raise PartialDelete(
                f"User {identity.user_id} was not fully deleted; retry the delete",
                external_id=identity.external_id,
            ) from exc

        logger.info("Identity deleted (user_id=%s, external_id=%s)", identity.user_id, identity.external_id)
        self._audit(
            "identity_delete",
            identity.email,
            operator=operator,
            external_id=identity.external_id,
            state=SyncState.COMMITTED.value,
            details={"user_id": identity.user_id, "warnings": warnings},
        )
        return SyncOutcome(SyncState.COMMITTED, identity, warnings)

    # ─────────────────────────────────────────────────────────────────────────
    # Operation C: sync-on-verify
    # ─────────────────────────────────────────────────────────────────────────
    def sync_on_verify(
        self,
        verified_external_id: str,
        payload: dict,
        *,
        verified_email: Optional[str] = None,
        email_verified: bool = False,
    ) -> SyncOutcome:
        """Create or update the caller's row from a verified request.

        The payload must claim the same external id the token proved;
        anything else is rejected before any read or write. When the token
        carries an email it wins over the payload's, since the provider owns
        the login email. Role, branch and level tag are ignored here: a new
        row gets ``default_role`` and an existing row keeps what an
        administrator set. A row provisioned without a credential is only
        linked when the provider has verified the caller owns its email.
        """
        claimed = payload.get("external_id") if isinstance(payload, dict) else None
        if not verified_external_id or claimed != verified_external_id:
            logger.warning("Identity mismatch: verified=%s claimed=%s", verified_external_id, claimed)
            raise IdentityMismatch("Authenticated identity does not match the submitted identity")

        email = validate_email(verified_email or payload.get("email"))
        fields = normalize_profile(payload)
        fields.pop("email", None)
        for name in PRIVILEGED_FIELDS:
            fields.pop(name, None)

        row = self.store.find_by_external_id_or_email(verified_external_id, email)
        if row is None:
            return self._provision_on_first_contact(verified_external_id, email, fields)

        if row.external_id and row.external_id != verified_external_id:
            raise Conflict("Email is already linked to another identity")

        if row.external_id is None:
            if not email_verified:
                logger.warning(
                    "Refusing to link user_id=%s to external_id=%s: email not verified",
                    row.user_id, verified_external_id,
                )
                raise Conflict("Verify your email address before signing in to this account")
            row = self.store.link_external_id(row.user_id, verified_external_id)
            logger.info("Linked user_id=%s to external_id=%s", row.user_id, verified_external_id)
            self._audit(
                "identity_link",
                email,
                operator=verified_external_id,
                external_id=verified_external_id,
                details={"user_id": row.user_id},
            )

        changes = row.diff({**fields, "email": email})
        if changes:
            row = self.store.update(verified_external_id, changes)
            self._audit(
                "identity_sync",
                email,
                operator=verified_external_id,
                external_id=verified_external_id,
                details={"action": "update", "fields": sorted(changes)},
            )
        return SyncOutcome(SyncState.COMMITTED, row)

    def _provision_on_first_contact(self, external_id: str, email: str, fields: dict) -> SyncOutcome:
        full_name = fields.pop("full_name", None) or email.split("@", 1)[0]
        try:
            row = self.store.insert(Identity(email=email, full_name=full_name, role=self.default_role, external_id=external_id, **fields))
        except Conflict:
            # A concurrent request from the same caller may have inserted first
            row = self.store.find_by_external_id(external_id)
            if row is None:
                raise
            return SyncOutcome(SyncState.COMMITTED, row)

        logger.info("Provisioned user_id=%s on first contact (external_id=%s)", row.user_id, external_id)
        self._audit(
            "identity_sync",
            email,
            operator=external_id,
            external_id=external_id,
            details={"action": "insert", "user_id": row.user_id, "role": row.role.value},
        )
        return SyncOutcome(SyncState.COMMITTED, row)

    # ─────────────────────────────────────────────────────────────────────────
    # Record-only operations
    # ─────────────────────────────────────────────────────────────────────────
    def provision_record(self, email: str, role, profile: Optional[dict] = None, *, operator: str = "system") -> SyncOutcome:
        """Insert a row without a credential; linked later on first verified contact."""
        email = validate_email(email)
        role = Role.parse(role)
        fields = normalize_profile(profile or {}, require_name=True)
        fields.pop("email", None)
        fields.pop("role", None)
        identity = self.store.insert(Identity(email=email, role=role, **fields))
        logger.info("Pre-provisioned user_id=%s without credential", identity.user_id)
        self._audit(
            "identity_provision",
            email,
            operator=operator,
            details={"user_id": identity.user_id, "role": role.value, "branch_id": identity.branch_id},
        )
        return SyncOutcome(SyncState.COMMITTED, identity)

    def update_profile(self, user_id: int, fields: dict, *, operator: str = "system") -> SyncOutcome:
        """Apply profile changes to a row; no write when nothing differs.

        The email of a row linked to a credential mirrors the provider's login
        email and only changes through synchronize_email_change.
        """
        row = self.store.get(user_id)
        if row is None:
            raise NotFound("User not found")
        changes = row.diff(normalize_profile(fields))
        if "email" in changes and row.external_id:
            raise ValidationError("Login email changes must be made by the account owner")
        if not changes:
            return SyncOutcome(SyncState.COMMITTED, row)
        row = self.store.update_row(user_id, changes)
        self._audit(
            "identity_update",
            row.email,
            operator=operator,
            external_id=row.external_id,
            details={"user_id": user_id, "fields": sorted(changes)},
        )
        return SyncOutcome(SyncState.COMMITTED, row)

    # ─────────────────────────────────────────────────────────────────────────
    # Self-service credential changes
    # ─────────────────────────────────────────────────────────────────────────
    def synchronize_email_change(self, principal: Principal, session_token: str, new_email: str) -> SyncOutcome:
        """Change the login email at the provider, then mirror it into the row.

        If the row cannot be updated the provider email is reverted with the
        refreshed session token.
        """
        new_email = validate_email(new_email)
        row = self.store.find_by_external_id(principal.external_id)
        if row is None:
            raise NotFound("User not found")
        old_email = row.email
        if new_email == old_email:
            return SyncOutcome(SyncState.COMMITTED, row)

        result = self.provider.update_credential_email(session_token, new_email)
        fresh_token = result.get("session_token") or session_token

        try:
            row = self.store.update(principal.external_id, {"email": new_email})
        except IdentityError as exc:
            self._compensate_email_change(exc, principal.external_id, old_email, new_email, fresh_token)
            raise

        self._audit(
            "credential_email_update",
            new_email,
            operator=principal.external_id,
            external_id=principal.external_id,
            details={"previous_email": old_email},
        )
        return SyncOutcome(SyncState.COMMITTED, row, session_token=fresh_token)

    def _compensate_email_change(
        self,
        error: IdentityError,
        external_id: str,
        old_email: str,
        new_email: str,
        session_token: str,
    ) -> None:
        try:
            self.provider.update_credential_email(session_token, old_email)
        except IdentityError as comp_exc:
            self._mark_inconsistent(
                error, "email_change", new_email, external_id, external_id,
                reason=f"provider email revert failed: {comp_exc.kind}",
            )
            return

        if isinstance(error, RecordStoreUnavailable):
            try:
                current = self.store.find_by_external_id(external_id)
                landed = current is None or current.email != old_email
            except IdentityError:
                landed = True
            if landed:
                self._mark_inconsistent(
                    error, "email_change", new_email, external_id, external_id,
                    reason="row email unconfirmed after revert",
                )
                return

        error.state = SyncState.ROLLED_BACK
        error.external_id = external_id
        logger.warning("Email change rolled back (external_id=%s): %s", external_id, error.kind)
        self._audit(
            "identity_rolled_back",
            old_email,
            operator=external_id,
            external_id=external_id,
            state=SyncState.ROLLED_BACK.value,
            details={"operation": "email_change", "error": error.kind},
            success=False,
        )

    def synchronize_secret_change(self, principal: Principal, session_token: str, new_secret: str) -> SyncOutcome:
        """Change the caller's password; the row holds no copy, so nothing to mirror."""
        result = self.provider.update_credential_secret(session_token, new_secret)
        self._audit(
            "credential_secret_update",
            principal.email or principal.external_id,
            operator=principal.external_id,
            external_id=principal.external_id,
        )
        identity = self.store.find_by_external_id(principal.external_id)
        return SyncOutcome(SyncState.COMMITTED, identity, session_token=result.get("session_token"))
