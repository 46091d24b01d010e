"""Audit logging utilities for identity synchronization events."""

from __future__ import annotations
import datetime
import hashlib
import hmac
import json
import os
import sys
from pathlib import Path
from typing import Any, Literal

AUDIT_LOG_DIR = Path(os.environ.get("AUDIT_LOG_DIR", ".runtime/audit"))
_default_secret_paths: list[Path] = []
_env_secret_path_str = os.environ.get("AUDIT_LOG_SIGNING_KEY_FILE")
_env_secret_path: Path | None = None
if _env_secret_path_str:
    _env_secret_path = Path(_env_secret_path_str)
    _default_secret_paths.append(_env_secret_path)
_default_secret_paths.extend([
    Path("/run/secrets/audit_log_signing_key"),
    Path(".runtime/secrets/audit_log_signing_key"),
])
AUDIT_LOG_FILE = AUDIT_LOG_DIR / "identity-events.jsonl"


def _get_signing_key() -> bytes:
    """Get the audit signing key (secret file, then environment, then demo default)."""
    if _env_secret_path and _env_secret_path.exists():
        try:
            return _env_secret_path.read_text(encoding="utf-8").strip().encode("utf-8")
        except OSError:
            pass
    if "AUDIT_LOG_SIGNING_KEY" in os.environ:
        return os.environ.get("AUDIT_LOG_SIGNING_KEY", "").strip().encode("utf-8")
    for path in _default_secret_paths:
        if path.exists():
            try:
                return path.read_text(encoding="utf-8").strip().encode("utf-8")
            except OSError:
                continue
    demo_default = os.environ.get("AUDIT_LOG_SIGNING_KEY_DEMO", "demo-audit-signing-key-change-in-production")
    return demo_default.encode("utf-8")


EventType = Literal[
    "identity_create", "identity_delete", "identity_sync", "identity_link",
    "identity_provision", "identity_update",
    "identity_rolled_back", "identity_inconsistent", "identity_partial_delete",
    "credential_cleanup_failed",
    "credential_email_update", "credential_secret_update",
    "identity_reconcile",
]


def _ensure_audit_dir() -> None:
    """Create audit directory with restricted permissions."""
    AUDIT_LOG_DIR.mkdir(parents=True, exist_ok=True)
    AUDIT_LOG_DIR.chmod(0o700)


def _sign_event(event: dict[str, Any]) -> str:
    """Generate HMAC-SHA256 signature for audit event."""
    signing_key = _get_signing_key()
    if not signing_key:
        return ""
    # Canonical JSON representation for signing
    canonical = json.dumps(event, sort_keys=True, separators=(",", ":"))
    return hmac.new(signing_key, canonical.encode("utf-8"), hashlib.sha256).hexdigest()


def log_sync_event(
    event_type: EventType,
    subject: str,
    *,
    operator: str = "system",
    external_id: str | None = None,
    state: str = "Committed",
    details: dict[str, Any] | None = None,
    success: bool = True,
) -> None:
    """Append an identity event to the audit trail with timestamp and signature.

    Args:
        event_type: Lifecycle operation (identity_create, identity_delete, ...)
        subject: Email or row key of the identity affected
        operator: Who performed the operation (external id, "cli", "self-service")
        external_id: Provider identity involved, when known
        state: Terminal SyncState of the operation
        details: Additional context (error kind, warnings, changed fields)
        success: Whether the operation succeeded
    """
    _ensure_audit_dir()

    event = {
        "timestamp": datetime.datetime.now(datetime.timezone.utc).isoformat(),
        "event_type": event_type,
        "subject": subject,
        "external_id": external_id,
        "operator": operator,
        "state": state,
        "success": success,
        "details": details or {},
    }

    signature = _sign_event(event)
    if signature:
        event["signature"] = signature

    # Append to JSONL file (one JSON object per line)
    with AUDIT_LOG_FILE.open("a", encoding="utf-8") as f:
        f.write(json.dumps(event, ensure_ascii=False) + "\n")

    AUDIT_LOG_FILE.chmod(0o600)


def safe_log_sync_event(event_type: EventType, subject: str, **kwargs: Any) -> bool:
    """Log an identity event without ever raising.

    Audit failures must not change the outcome of the operation being
    audited; they are reported on stderr instead.

    Returns:
        True if event was logged successfully, False if logging failed
    """
    try:
        log_sync_event(event_type, subject, **kwargs)
        return True
    except Exception as e:
        print(
            f"[audit] Warning: Failed to log {event_type} event for {subject}: {e}",
            file=sys.stderr
        )
        return False


def read_events(event_type: str | None = None) -> list[dict[str, Any]]:
    """Return logged events, optionally filtered by type (oldest first)."""
    if not AUDIT_LOG_FILE.exists():
        return []
    events = []
    with AUDIT_LOG_FILE.open("r", encoding="utf-8") as f:
        for line in f:
            if not line.strip():
                continue
            event = json.loads(line)
            if event_type is None or event.get("event_type") == event_type:
                events.append(event)
    return events


def verify_audit_log() -> tuple[int, int]:
    """Verify all signatures in the audit log.

    Returns:
        Tuple of (total_events, valid_signatures)
    """
    if not AUDIT_LOG_FILE.exists():
        return 0, 0

    total = 0
    valid = 0

    with AUDIT_LOG_FILE.open("r", encoding="utf-8") as f:
        for line in f:
            if not line.strip():
                continue
            total += 1
            try:
                event = json.loads(line)
                stored_sig = event.pop("signature", "")
                if not stored_sig:
                    continue
                computed_sig = _sign_event(event)
                if hmac.compare_digest(stored_sig, computed_sig):
                    valid += 1
            except (json.JSONDecodeError, KeyError):
                continue

    return total, valid


if __name__ == "__main__":
    total, valid = verify_audit_log()
    print(f"Audit log: {valid}/{total} events with valid signatures")
    sys.exit(0 if total == valid else 1)
