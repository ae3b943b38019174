"""
shared/utils.py

Small helpers shared by stores, stages and plugins: identifiers, UTC clock,
timestamp (de)serialization and suggestion normalization.
"""

import uuid
from datetime import datetime, timezone
from typing import Iterable, List, Optional


def generate_id() -> str:
    """Return a new random identifier as a hex string."""
    return uuid.uuid4().hex


def utc_now() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    """
    Serialize a datetime to a fixed-width ISO 8601 UTC string.

    Microsecond precision is always emitted, so lexicographic comparison of
    stored strings matches chronological order. Naive datetimes are treated
    as UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: Optional[str]) -> Optional[datetime]:
    """Parse a string produced by `to_iso` back into an aware datetime."""
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def normalize_suggestion(text: str) -> str:
    """Key used for case-insensitive, whitespace-trimmed suggestion dedup."""
    return text.strip().lower()


def dedupe_suggestions(suggestions: Iterable[str], limit: Optional[int] = None) -> List[str]:
    """
    Deduplicate suggestions preserving first-seen order and form.

    Args:
        suggestions: Candidate suggestions, highest priority first.
        limit: Maximum number of suggestions to keep; None keeps all.

    Returns:
        List[str]: Trimmed suggestions, first occurrence wins.
    """
    seen = set()
    result: List[str] = []
    for suggestion in suggestions:
        key = normalize_suggestion(suggestion)
        if not key or key in seen:
            continue
        seen.add(key)
        result.append(suggestion.strip())
        if limit is not None and len(result) >= limit:
            break
    return result


def preview(text: str, length: int = 50) -> str:
    """Truncate text for log messages."""
    return text if len(text) <= length else f"{text[:length]}..."
