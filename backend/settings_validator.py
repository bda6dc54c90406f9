import logging
from typing import Any, Mapping

import config

logger = logging.getLogger(__name__)


def _as_count(value: Any) -> int | None:
    """Parse a non-negative integer sent either as a digit string or a plain int."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value >= 0 else None
    if isinstance(value, str) and value.isascii() and value.isdigit():
        return int(value)
    return None


def validate(settings: Any, constraints: Mapping[str, tuple] = config.SETTINGS_CONSTRAINTS) -> bool:
    """Return True only if every field is known and within its declared bound.

    Fields missing from ``settings`` are not checked; one bad or unknown field
    rejects the whole object.
    """
    if not isinstance(settings, Mapping):
        return False

    for field, value in settings.items():
        constraint = constraints.get(field)
        if constraint is None:
            logger.debug("Unknown settings field %r", field)
            return False
        kind, allowed = constraint
        if kind == "enum":
            if not isinstance(value, str) or value not in allowed:
                return False
        elif kind == "int":
            number = _as_count(value)
            low, high = allowed
            if number is None or not (low <= number <= high):
                return False
        else:
            return False
    return True


def merge(current: Mapping[str, Any], update: Mapping[str, Any]) -> dict:
    """Apply an already-validated partial update, normalising counts to strings."""
    merged = dict(current)
    for field, value in update.items():
        merged[field] = str(value) if config.SETTINGS_CONSTRAINTS[field][0] == "int" else value
    return merged


def minutes(settings: Mapping[str, Any], mode: str) -> int:
    field = "timeWrite" if mode == config.WRITE else "timeDraw"
    return int(settings.get(field, 0))
