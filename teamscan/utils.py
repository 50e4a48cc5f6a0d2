"""Shared utility functions used across teamscan modules."""
from __future__ import annotations

import json
import re
from datetime import UTC, datetime
from typing import Any

_MISSING = object()


def json_parse(value: str | None, default: Any = _MISSING) -> Any:
    """Safely parse a JSON string, returning *default* on failure.

    If no default is given, returns ``{}`` on parse error.
    """
    try:
        return json.loads(value or "")
    except (json.JSONDecodeError, TypeError):
        return {} if default is _MISSING else default


def utcnow() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands datetimes back naive; treat those as UTC."""
    if value is None:
        return None
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


def isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def preview(text: str | None, limit: int = 200) -> str:
    """Single-line prefix of *text* for logs and error messages."""
    flat = " ".join((text or "").split())
    return flat if len(flat) <= limit else flat[:limit] + "..."


_NON_NUMERIC = re.compile(r"[^\d.\-]")


def parse_amount(value: object) -> float | None:
    """Parse a money value that may arrive as a number or a formatted string."""
    if value is None or value == "" or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if value else None
    cleaned = _NON_NUMERIC.sub("", str(value))
    try:
        amount = float(cleaned)
    except ValueError:
        return None
    return amount or None


def parse_timestamp(value: object) -> datetime | None:
    """Parse CRM timestamps (``2024-05-01 10:22:03`` or ISO-8601), None if unparseable."""
    if not value or not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    return as_utc(parsed)
