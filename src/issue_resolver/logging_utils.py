"""Configure loguru and summarize status updates for compact log lines."""

from __future__ import annotations

import sys
from typing import Any

from loguru import logger

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{module}</cyan>:<cyan>{line}</cyan>\n"
    "{message}"
)


def configure_logging(level: str = "INFO") -> None:
    """Configure loguru logger with the specified level."""
    logger.remove()
    logger.add(sys.stderr, level=level.upper(), format=LOG_FORMAT)


def truncate_output(text: str | None, limit: int = 500) -> str:
    """Cap `text` at `limit` characters, appending "..." when something was cut."""
    if not text:
        return ""
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


def summarize_update(update: Any) -> dict[str, Any]:
    """Render a compact, JSON-friendly summary of a status update.

    Args:
        update: `StatusUpdate` instance (or None).

    Returns:
        A dictionary suitable for logging or serialization.
    """
    if update is None:
        return {"update": None}

    kind = getattr(update, "kind", None)
    d: dict[str, Any] = {"kind": getattr(kind, "value", kind)}

    session_id = getattr(update, "session_id", None)
    if session_id is not None:
        d["session_id"] = session_id

    message = getattr(update, "message", None)
    if message:
        first_line = str(message).strip().splitlines()[0] if str(message).strip() else ""
        d["message"] = truncate_output(first_line, 120)

    request = getattr(update, "request", None)
    if request is not None:
        d["request_id"] = getattr(request, "id", None)
        d["request_type"] = getattr(request, "type", None)

    result = getattr(update, "result", None)
    if result is not None:
        d["success"] = getattr(result, "success", None)
        error = getattr(result, "error", None)
        if error:
            d["error"] = error
    return d
