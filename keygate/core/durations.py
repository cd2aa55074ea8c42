"""
Duration Classes

Maps the duration classes accepted at issuance to fixed offsets.
Expiry is computed once at creation and stored as an absolute timestamp;
the label is informational only.
"""

from dataclasses import dataclass
from datetime import timedelta
from typing import Dict, Mapping

from .exceptions import KeyValidationError


@dataclass(frozen=True)
class DurationSpec:
    """Offset and display label for one duration class."""
    offset: timedelta
    label: str


# "permanent" is a long finite offset so expiry comparisons stay uniform.
DEFAULT_DURATIONS: Dict[str, DurationSpec] = {
    "short": DurationSpec(timedelta(hours=1), "1 Hour"),
    "day": DurationSpec(timedelta(hours=24), "24 Hours"),
    "week": DurationSpec(timedelta(days=7), "7 Days"),
    "month": DurationSpec(timedelta(days=30), "30 Days"),
    "permanent": DurationSpec(timedelta(days=365), "Permanent (1 Year)"),
}

DURATION_ALIASES: Dict[str, str] = {
    "1h": "short",
    "24h": "day",
    "7d": "week",
    "30d": "month",
    "perm": "permanent",
}


def resolve_duration(
    duration_class: str,
    table: Mapping[str, DurationSpec] = DEFAULT_DURATIONS,
) -> DurationSpec:
    """
    Look up a duration class, accepting the short aliases.

    Raises:
        KeyValidationError: If the class is unknown
    """
    if not duration_class:
        raise KeyValidationError("Duration class is required")

    name = duration_class.strip().lower()
    spec = table.get(name) or table.get(DURATION_ALIASES.get(name, ""))
    if spec is None:
        raise KeyValidationError(
            f"Unknown duration class: {duration_class}. "
            f"Expected one of: {', '.join(table)}"
        )
    return spec
