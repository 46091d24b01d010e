"""Error taxonomy shared by the provider client, record stores, synchronizer and gate.

Every error carries a stable ``kind`` (what the route layer maps to a
user-facing message), an HTTP status, and the ``state`` the identity was
left in when the error surfaced.
"""
from __future__ import annotations
import enum
from typing import Optional


class SyncState(str, enum.Enum):
    """Terminal state of a cross-system operation."""

    COMMITTED = "Committed"
    ABORTED = "Aborted"
    ROLLED_BACK = "RolledBack"
    INCONSISTENT = "Inconsistent"
    PARTIAL_DELETE = "PartialDelete"

    @property
    def needs_reconciliation(self) -> bool:
        return self is SyncState.INCONSISTENT

    @property
    def retryable(self) -> bool:
        """Safe to re-run the same operation without operator involvement."""
        return self in {SyncState.ABORTED, SyncState.ROLLED_BACK, SyncState.PARTIAL_DELETE}


class IdentityError(Exception):
    """Base exception for all identity operations.

    Attributes:
        kind: Stable taxonomy name (e.g. "Conflict")
        message: Human-readable description
        state: SyncState the operation ended in
        status: HTTP status the API layer responds with
    """

    kind = "IdentityError"
    status = 500

    def __init__(self, message: str = "", *, state: SyncState = SyncState.ABORTED, external_id: Optional[str] = None):
        self.message = message or self.kind
        self.state = state
        self.external_id = external_id
        super().__init__(self.message)

    def to_dict(self) -> dict:
        """Convert to the {kind, message, state} wire format."""
        return {
            "kind": self.kind,
            "message": self.message,
            "state": self.state.value,
            "retryable": self.state.retryable,
        }


class DuplicateIdentity(IdentityError):
    """Email already registered at the credential provider."""
    kind = "DuplicateIdentity"
    status = 409


class WeakSecret(IdentityError):
    """Provider rejected the password against its strength policy."""
    kind = "WeakSecret"
    status = 400


class InvalidEmail(IdentityError):
    """Malformed email address."""
    kind = "InvalidEmail"
    status = 400


class ValidationError(IdentityError):
    """Request payload failed local validation."""
    kind = "ValidationError"
    status = 400


class Conflict(IdentityError):
    """Record store uniqueness violation."""
    kind = "Conflict"
    status = 409


class NotFound(IdentityError):
    """Expected row or identity absent."""
    kind = "NotFound"
    status = 404


class ProviderUnavailable(IdentityError):
    """Transport failure or timeout talking to the credential provider."""
    kind = "ProviderUnavailable"
    status = 503


class ProviderRejected(IdentityError):
    """Provider refused the call with an error code outside the known taxonomy."""
    kind = "ProviderRejected"
    status = 502


class RecordStoreUnavailable(IdentityError):
    """Connection failure or timeout talking to the record store.

    The outcome of the statement is unknown: it may or may not have landed.
    """
    kind = "RecordStoreUnavailable"
    status = 503


class InvalidSession(IdentityError):
    """Session token is missing, expired, revoked or does not belong to the caller."""
    kind = "InvalidSession"
    status = 401


class Unauthenticated(IdentityError):
    """Inbound request carries no verifiable credential."""
    kind = "Unauthenticated"
    status = 401


class Unauthorized(IdentityError):
    """Verified caller lacks the role or branch scope for the operation."""
    kind = "Unauthorized"
    status = 403


class IdentityMismatch(IdentityError):
    """Token-verified identity differs from the identity claimed in the payload."""
    kind = "IdentityMismatch"
    status = 403


class Inconsistent(IdentityError):
    """Compensation after a partial failure did not succeed."""
    kind = "Inconsistent"
    status = 500

    def __init__(self, message: str = "", *, external_id: Optional[str] = None):
        super().__init__(message, state=SyncState.INCONSISTENT, external_id=external_id)


class PartialDelete(IdentityError):
    """Credential removed (or already absent) but the record-store row survived."""
    kind = "PartialDelete"
    status = 500

    def __init__(self, message: str = "", *, external_id: Optional[str] = None):
        super().__init__(message, state=SyncState.PARTIAL_DELETE, external_id=external_id)
