"""Provide utility helpers for timestamps, slugs and identifiers."""

from __future__ import annotations

import re
import uuid
from datetime import datetime, timezone
from typing import Optional

_SLUG_RE = re.compile(r"[^a-z0-9]+")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        if not isinstance(value, str):
            value = str(value)
        if value.endswith("Z"):
            value = value[:-1] + "+00:00"
        dt = datetime.fromisoformat(value)
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt
    except ValueError:
        return None


def slugify(text: str, max_length: int = 50) -> str:
    """Convert text to a lowercase, hyphen-separated slug.

    Runs of non-alphanumeric characters collapse to a single hyphen, leading
    and trailing hyphens are trimmed, and the result is capped at
    `max_length` characters.

    Args:
        text: Arbitrary input text.
        max_length: Maximum slug length.

    Returns:
        The slug (possibly empty).
    """
    slug = _SLUG_RE.sub("-", (text or "").lower()).strip("-")
    return slug[:max_length].rstrip("-")


def _new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:10]}"
