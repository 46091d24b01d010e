"""Domain types: roles, identities and request principals."""
from __future__ import annotations
import enum
from dataclasses import dataclass, asdict, fields, replace
from typing import Any, Optional

from .errors import ValidationError


class Role(str, enum.Enum):
    """Closed set of user types; values match the ``user_type`` column."""

    SUPERADMIN = "Superadmin"
    ADMIN = "Admin"
    FINANCE = "Finance"
    TEACHER = "Teacher"
    STUDENT = "Student"

    @classmethod
    def parse(cls, value: Any) -> "Role":
        if isinstance(value, Role):
            return value
        for role in cls:
            if isinstance(value, str) and value.strip().lower() == role.value.lower():
                return role
        allowed = ", ".join(r.value for r in cls)
        raise ValidationError(f"Invalid user type '{value}'. Allowed: {allowed}")


# Columns an update may touch; user_id and external_id are never written through update()
MUTABLE_FIELDS = (
    "email",
    "full_name",
    "role",
    "branch_id",
    "gender",
    "date_of_birth",
    "phone_number",
    "level_tag",
    "profile_picture_url",
)

# Fields the identity owner may not change on their own row
PRIVILEGED_FIELDS = ("role", "branch_id", "level_tag")


@dataclass
class Identity:
    """One user-of-record row, optionally linked to a provider credential."""

    email: str
    full_name: str
    role: Role
    external_id: Optional[str] = None
    user_id: Optional[int] = None
    branch_id: Optional[int] = None
    gender: Optional[str] = None
    date_of_birth: Optional[str] = None
    phone_number: Optional[str] = None
    level_tag: Optional[str] = None
    profile_picture_url: Optional[str] = None

    @classmethod
    def from_row(cls, row: dict) -> "Identity":
        """Build from a ``userstbl`` row (column names as in the table)."""
        dob = row.get("date_of_birth")
        if dob is not None and hasattr(dob, "isoformat"):
            dob = dob.isoformat()
        return cls(
            user_id=row.get("user_id"),
            external_id=row.get("firebase_uid"),
            email=row["email"],
            full_name=row.get("full_name") or "",
            role=Role.parse(row["user_type"]),
            branch_id=row.get("branch_id"),
            gender=row.get("gender"),
            date_of_birth=dob,
            phone_number=row.get("phone_number"),
            level_tag=row.get("level_tag"),
            profile_picture_url=row.get("profile_picture_url"),
        )

    def to_row(self) -> dict:
        """Column mapping used by the record stores."""
        row = self.to_dict()
        row["firebase_uid"] = row.pop("external_id")
        row["user_type"] = row.pop("role")
        return row

    def to_dict(self) -> dict:
        data = asdict(self)
        data["role"] = self.role.value
        return data

    def with_changes(self, changes: dict) -> "Identity":
        return replace(self, **changes)

    def diff(self, changes: dict) -> dict:
        """Subset of ``changes`` whose values differ from the current ones."""
        names = {f.name for f in fields(self)}
        return {k: v for k, v in changes.items() if k in names and getattr(self, k) != v}


@dataclass(frozen=True)
class Principal:
    """Verified caller attached to a request by the access gate.

    ``user_id`` and ``role`` are None when the credential is valid but no
    record-store row exists yet (first contact).
    """

    external_id: str
    email: Optional[str] = None
    user_id: Optional[int] = None
    role: Optional[Role] = None
    branch_id: Optional[int] = None
    session_token: Optional[str] = None
    email_verified: bool = False

    @property
    def is_provisioned(self) -> bool:
        return self.user_id is not None and self.role is not None

    def to_dict(self) -> dict:
        return {
            "external_id": self.external_id,
            "email": self.email,
            "user_id": self.user_id,
            "role": self.role.value if self.role else None,
            "branch_id": self.branch_id,
        }
