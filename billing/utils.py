"""
Utility functions shared across the engine and the HTTP layer. This includes:
- utcnow / as_naive_utc: naive UTC timestamps (the only clock the engine reads).
- next_document_number: unique quote / invoice numbers.
- to_iso: datetime serialization for JSON payloads.
- parse_int / parse_datetime: lenient parsing of request payload values.
- json_body: the request JSON object for API routes.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from flask import request

from .errors import ValidationError


def utcnow() -> datetime:
    """Current UTC time as a naive datetime (matches DateTime columns)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Convert an aware datetime to naive UTC; naive values are taken as UTC already."""
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def next_document_number(prefix: str, when: Optional[datetime] = None) -> str:
    """
    Return a unique document number, e.g. Q-20260301-9F2A11C0.

    Uniqueness is guaranteed by the random suffix and enforced by a unique column.
    """
    when = when or utcnow()
    return f"{prefix}-{when:%Y%m%d}-{uuid.uuid4().hex[:8].upper()}"


def to_iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.replace(microsecond=0).isoformat() + "Z"


def parse_int(value: Any) -> Optional[int]:
    """Parse an integer from JSON/query input. Returns None if empty/invalid. Booleans are not integers."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    raw = str(value).strip()
    if raw == "":
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp into naive UTC. Returns None if empty/invalid."""
    if value is None:
        return None
    raw = str(value).strip()
    if raw == "":
        return None
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        return None
    return as_naive_utc(parsed)


def json_body() -> Dict[str, Any]:
    """Request JSON object, {} when the body is empty. A non-object body is a ValidationError."""
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object.")
    return data
