"""Request payload helpers shared by the auth and users blueprints."""
from typing import Optional

from academy_iam.core.errors import ValidationError

# Column-style keys accepted from clients -> Identity attribute names
PAYLOAD_ALIASES = {
    "user_type": "role",
    "firebase_uid": "external_id",
    "uid": "external_id",
}


def identity_fields(body: dict) -> dict:
    """Rename column-style keys to Identity attribute names.

    A canonical key already present in ``body`` wins over its alias.
    """
    out = dict(body)
    for alias, name in PAYLOAD_ALIASES.items():
        if alias in out:
            value = out.pop(alias)
            out.setdefault(name, value)
    return out


def int_arg(args, name: str, default: Optional[int] = None, *, minimum: int = 1, maximum: Optional[int] = None) -> Optional[int]:
    """Parse an integer query parameter, clamped to ``maximum``."""
    raw = args.get(name)
    if raw in (None, ""):
        return default
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise ValidationError(f"Query parameter '{name}' must be an integer")
    if value < minimum:
        raise ValidationError(f"Query parameter '{name}' must be >= {minimum}")
    if maximum is not None:
        value = min(value, maximum)
    return value
