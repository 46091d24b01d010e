"""Operator CLI for reconciling Firebase credentials with user rows.

Finds and repairs what the synchronizer could not self-heal: credentials
without a row (failed create compensation), rows pointing at a credential
that no longer exists, and partial deletes that need a retry.
"""
from __future__ import annotations
import argparse
import json
import sys
import time
from pathlib import Path

SCRIPT_DIR = Path(__file__).parent
PROJECT_ROOT = SCRIPT_DIR.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from academy_iam.bootstrap import build_provider, build_store, build_synchronizer
from academy_iam.config import load_settings
from academy_iam.core.errors import IdentityError
from scripts import audit


def build_services():
    """Provider and store from the environment (replaced in tests)."""
    cfg = load_settings()
    return build_provider(cfg), build_store(cfg)


def synchronizer_for(provider, store):
    """Synchronizer configured like the app's (self-service role from settings)."""
    return build_synchronizer(load_settings(), provider, store)


def _age_minutes(credential: dict, now_ms: int) -> float | None:
    created = credential.get("created_at")
    try:
        return (now_ms - int(created)) / 60000
    except (TypeError, ValueError):
        return None


def find_orphans(provider, store, *, min_age_minutes: float = 0) -> tuple[list[dict], list[str]]:
    """Return (credentials without a row, external ids of rows without a credential).

    Credentials younger than ``min_age_minutes`` are skipped: a self-service
    sign-up legitimately has no row until its first sync.
    """
    linked = store.list_external_ids()
    credentials = list(provider.iter_credentials())
    known = {c["external_id"] for c in credentials}
    now_ms = int(time.time() * 1000)

    orphan_credentials = []
    for credential in credentials:
        if credential["external_id"] in linked:
            continue
        age = _age_minutes(credential, now_ms)
        if min_age_minutes and age is not None and age < min_age_minutes:
            continue
        orphan_credentials.append(credential)
    dangling_rows = sorted(linked - known)
    return orphan_credentials, dangling_rows


def _print_credentials(credentials: list[dict], fmt: str) -> None:
    if fmt == "json":
        print(json.dumps(credentials, indent=2))
        return
    print(f"{'UID':<32} {'EMAIL':<40} {'DISABLED':<8}")
    for c in credentials:
        print(f"{c['external_id'] or '':<32} {c['email'] or '':<40} {str(c['disabled']):<8}")
    print(f"{len(credentials)} credential(s)")


def main(argv: list[str] | None = None) -> None:
    """Command-line entry point."""
    parser = argparse.ArgumentParser(description="Firebase / user table reconciliation")
    parser.add_argument("--operator", default="cli",
                        help="Operator identifier for audit logs (default: cli)")

    sub = parser.add_subparsers(dest="cmd")

    sl = sub.add_parser("list-credentials", help="List Firebase credentials")
    sl.add_argument("--limit", type=int, default=None)
    sl.add_argument("--format", choices=["table", "json"], default="table")
    sl.add_argument("--email", default=None, help="Case-insensitive email substring filter")
    sl.add_argument("--uid", default=None, help="Show a single credential")

    so = sub.add_parser("orphans", help="Report credentials without rows and rows without credentials")
    so.add_argument("--min-age-minutes", type=float, default=60)
    so.add_argument("--format", choices=["table", "json"], default="table")

    sp = sub.add_parser("purge-orphans", help="Delete credentials that have no user row")
    sp.add_argument("--min-age-minutes", type=float, default=60)
    sp.add_argument("--apply", action="store_true", help="Actually delete (default: dry run)")

    sr = sub.add_parser("retry-delete", help="Re-run the delete of a user row and its credential")
    sr.add_argument("user_id", type=int)

    sub.add_parser("verify-audit", help="Verify audit log signatures")

    args = parser.parse_args(argv)

    if not args.cmd:
        parser.print_help()
        return

    if args.cmd == "verify-audit":
        total, valid = audit.verify_audit_log()
        print(f"Audit log: {valid}/{total} events with valid signatures")
        if total != valid:
            sys.exit(1)
        return

    provider, store = build_services()

    try:
        if args.cmd == "list-credentials":
            if args.uid:
                credential = provider.get_credential(args.uid)
                if credential is None:
                    print(f"[list-credentials] No credential with uid {args.uid}", file=sys.stderr)
                    sys.exit(1)
                credentials = [credential]
            else:
                credentials = list(provider.iter_credentials(limit=args.limit))
            if args.email:
                needle = args.email.lower()
                credentials = [c for c in credentials if needle in (c.get("email") or "").lower()]
            _print_credentials(credentials, args.format)

        elif args.cmd == "orphans":
            orphan_credentials, dangling_rows = find_orphans(
                provider, store, min_age_minutes=args.min_age_minutes
            )
            if args.format == "json":
                print(json.dumps({
                    "credentials_without_row": orphan_credentials,
                    "rows_without_credential": dangling_rows,
                }, indent=2))
            else:
                print("Credentials without a user row:")
                for c in orphan_credentials:
                    print(f"  {c['external_id']}  {c.get('email') or ''}")
                print("Rows whose firebase_uid has no credential:")
                for external_id in dangling_rows:
                    print(f"  {external_id}")

        elif args.cmd == "purge-orphans":
            orphan_credentials, _ = find_orphans(provider, store, min_age_minutes=args.min_age_minutes)
            if not args.apply:
                for c in orphan_credentials:
                    print(f"[dry-run] would delete {c['external_id']} ({c.get('email') or ''})")
                print(f"{len(orphan_credentials)} orphan credential(s); re-run with --apply to delete")
                return
            failures = 0
            for c in orphan_credentials:
                try:
                    provider.delete_credential(c["external_id"])
                except IdentityError as e:
                    failures += 1
                    print(f"[purge-orphans] Error deleting {c['external_id']}: {e}", file=sys.stderr)
                    audit.safe_log_sync_event(
                        "identity_reconcile",
                        c.get("email") or c["external_id"],
                        operator=args.operator,
                        external_id=c["external_id"],
                        state="Inconsistent",
                        details={"action": "purge_orphan_credential", "error": e.kind},
                        success=False,
                    )
                    continue
                print(f"Deleted orphan credential {c['external_id']}")
                audit.safe_log_sync_event(
                    "identity_reconcile",
                    c.get("email") or c["external_id"],
                    operator=args.operator,
                    external_id=c["external_id"],
                    details={"action": "purge_orphan_credential"},
                )
            if failures:
                sys.exit(1)

        elif args.cmd == "retry-delete":
            synchronizer = synchronizer_for(provider, store)
            outcome = synchronizer.synchronize_delete(args.user_id, operator=args.operator)
            print(f"User {args.user_id} deleted (state={outcome.state.value})")
            for warning in outcome.warnings:
                print(f"  warning: {warning}")

        else:
            parser.print_help()

    except IdentityError as e:
        print(f"[{args.cmd}] Error: {e.kind} (state={e.state.value}): {e.message}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
