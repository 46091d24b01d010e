"""Input validation helpers for identity payloads."""
from __future__ import annotations
import re
from datetime import date
from typing import Any

from .errors import InvalidEmail, ValidationError, WeakSecret
from .models import MUTABLE_FIELDS, Role

EMAIL_MAX_LENGTH = 254
NAME_MAX_LENGTH = 128
SECRET_MIN_LENGTH = 6  # Firebase password policy minimum
GENDERS = ("Male", "Female", "Other")
DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")

# Profile fields that are stored as NULL when sent as an empty string
OPTIONAL_FIELDS = ("gender", "date_of_birth", "phone_number", "branch_id", "level_tag", "profile_picture_url")


def validate_email(email: Any) -> str:
    """Validate email address.

    Args:
        email: Email address to validate

    Returns:
        Normalized (trimmed, lower-cased) email address

    Raises:
        InvalidEmail: If email is invalid
    """
    if not isinstance(email, str):
        raise InvalidEmail("Valid email is required")
    email = email.strip().lower()
    if not email or "@" not in email:
        raise InvalidEmail("Invalid email format")

    local, domain = email.rsplit("@", 1)
    if not local or not domain or "." not in domain or domain.startswith(".") or domain.endswith("."):
        raise InvalidEmail("Invalid email format")
    if any(char.isspace() for char in email):
        raise InvalidEmail("Invalid email format")
    if len(email) > EMAIL_MAX_LENGTH:
        raise InvalidEmail("Email exceeds maximum length")

    return email


def validate_secret(secret: Any) -> str:
    """Reject passwords the provider would refuse anyway."""
    if not isinstance(secret, str) or len(secret) < SECRET_MIN_LENGTH:
        raise WeakSecret(f"Password must be at least {SECRET_MIN_LENGTH} characters")
    return secret


def validate_name(name: Any, field: str) -> str:
    """Validate a display name.

    Args:
        name: Name to validate
        field: Field name for error messages (e.g., "Full name")

    Returns:
        Trimmed name

    Raises:
        ValidationError: If name is invalid
    """
    if not isinstance(name, str):
        raise ValidationError(f"{field} is required")
    name = name.strip()
    if not name:
        raise ValidationError(f"{field} is required")
    if len(name) > NAME_MAX_LENGTH:
        raise ValidationError(f"{field} exceeds maximum length")

    # Prevent injection attacks
    if any(char in name for char in "<>\"`;|$"):
        raise ValidationError(f"{field} contains invalid characters")

    return name


def _validate_branch(value: Any) -> int:
    if isinstance(value, bool):
        raise ValidationError("Branch ID must be an integer")
    try:
        branch_id = int(value)
    except (TypeError, ValueError):
        raise ValidationError("Branch ID must be an integer")
    if branch_id < 1:
        raise ValidationError("Branch ID must be a positive integer")
    return branch_id


def normalize_profile(payload: dict, *, require_name: bool = False) -> dict:
    """Extract and validate the mutable identity fields present in ``payload``.

    Unknown keys are ignored. Empty strings on optional fields become None,
    so clients can clear them.

    Returns:
        Dict keyed by Identity attribute names
    """
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object")

    out: dict[str, Any] = {}
    for key in MUTABLE_FIELDS:
        if key not in payload:
            continue
        value = payload[key]
        if key in OPTIONAL_FIELDS and (value == "" or value is None):
            out[key] = None
            continue
        if key == "email":
            out[key] = validate_email(value)
        elif key == "full_name":
            out[key] = validate_name(value, "Full name")
        elif key == "role":
            out[key] = Role.parse(value)
        elif key == "branch_id":
            out[key] = _validate_branch(value)
        elif key == "gender":
            if value not in GENDERS:
                raise ValidationError(f"Invalid gender. Allowed: {', '.join(GENDERS)}")
            out[key] = value
        elif key == "date_of_birth":
            if not isinstance(value, str) or not DATE_PATTERN.match(value):
                raise ValidationError("Date of birth must be formatted YYYY-MM-DD")
            try:
                date.fromisoformat(value)
            except ValueError:
                raise ValidationError("Date of birth is not a valid date")
            out[key] = value
        else:
            if not isinstance(value, str):
                raise ValidationError(f"{key} must be a string")
            out[key] = value.strip()

    if require_name and "full_name" not in out:
        raise ValidationError("Full name is required")
    return out
