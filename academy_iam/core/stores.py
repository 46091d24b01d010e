"""In-memory identity record store for development, demo mode and tests.

Mirrors the PostgreSQL store's contract: every operation is a single atomic
step under one lock, and the email / external id uniqueness checks arbitrate
concurrent inserts exactly like the table's unique constraints do.
"""
from __future__ import annotations

from dataclasses import replace
from typing import Dict, Optional
import itertools
import threading

from .errors import Conflict, NotFound, ValidationError
from .models import MUTABLE_FIELDS, Identity, Role


def _check_fields(fields: dict) -> None:
    unknown = set(fields) - set(MUTABLE_FIELDS)
    if unknown:
        raise ValidationError(f"Fields not updatable: {', '.join(sorted(unknown))}")


class InMemoryIdentityStore:
    def __init__(self):
        self._rows: Dict[int, Identity] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    # Lookups ---------------------------------------------------------------
    def _by_external_id(self, external_id: Optional[str]) -> Optional[Identity]:
        if not external_id:
            return None
        for row in self._rows.values():
            if row.external_id == external_id:
                return row
        return None

    def _by_email(self, email: Optional[str]) -> Optional[Identity]:
        if not email:
            return None
        email = email.lower()
        for row in self._rows.values():
            if row.email.lower() == email:
                return row
        return None

    def find_by_external_id_or_email(self, external_id: Optional[str], email: Optional[str]) -> Optional[Identity]:
        with self._lock:
            row = self._by_external_id(external_id) or self._by_email(email)
            return replace(row) if row else None

    def find_by_external_id(self, external_id: str) -> Optional[Identity]:
        with self._lock:
            row = self._by_external_id(external_id)
            return replace(row) if row else None

    def get(self, user_id: int) -> Optional[Identity]:
        with self._lock:
            row = self._rows.get(user_id)
            return replace(row) if row else None

    def list(self, branch_id: Optional[int] = None, role: Optional[Role] = None, limit: int = 20, offset: int = 0) -> tuple[list[Identity], int]:
        with self._lock:
            rows = [
                r for _, r in sorted(self._rows.items())
                if (branch_id is None or r.branch_id == branch_id) and (role is None or r.role == role)
            ]
            return [replace(r) for r in rows[offset:offset + limit]], len(rows)

    def list_external_ids(self) -> set[str]:
        with self._lock:
            return {r.external_id for r in self._rows.values() if r.external_id}

    def ping(self) -> bool:
        return True

    # Writes ----------------------------------------------------------------
    def _assert_unique(self, email: Optional[str], external_id: Optional[str], exclude: Optional[int] = None) -> None:
        for user_id, row in self._rows.items():
            if user_id == exclude:
                continue
            if email and row.email.lower() == email.lower():
                raise Conflict("Email already exists")
            if external_id and row.external_id == external_id:
                raise Conflict("Firebase UID already linked to another user")

    def insert(self, identity: Identity) -> Identity:
        with self._lock:
            self._assert_unique(identity.email, identity.external_id)
            row = replace(identity, user_id=next(self._ids))
            self._rows[row.user_id] = row
            return replace(row)

    def _apply(self, row: Identity, fields: dict) -> Identity:
        _check_fields(fields)
        self._assert_unique(fields.get("email"), None, exclude=row.user_id)
        updated = replace(row, **fields)
        self._rows[row.user_id] = updated
        return replace(updated)

    def update(self, external_id: str, fields: dict) -> Identity:
        with self._lock:
            row = self._by_external_id(external_id)
            if row is None:
                raise NotFound("User not found")
            return self._apply(row, fields)

    def update_row(self, user_id: int, fields: dict) -> Identity:
        with self._lock:
            row = self._rows.get(user_id)
            if row is None:
                raise NotFound("User not found")
            return self._apply(row, fields)

    def link_external_id(self, user_id: int, external_id: str) -> Identity:
        with self._lock:
            row = self._rows.get(user_id)
            if row is None:
                raise NotFound("User not found")
            if row.external_id is not None:
                raise Conflict("User already linked to a credential")
            self._assert_unique(None, external_id, exclude=user_id)
            updated = replace(row, external_id=external_id)
            self._rows[user_id] = updated
            return replace(updated)

    def delete(self, external_id: str) -> Identity:
        with self._lock:
            row = self._by_external_id(external_id)
            if row is None:
                raise NotFound("User not found")
            return self._rows.pop(row.user_id)

    def delete_row(self, user_id: int) -> Identity:
        with self._lock:
            row = self._rows.pop(user_id, None)
            if row is None:
                raise NotFound("User not found")
            return row
