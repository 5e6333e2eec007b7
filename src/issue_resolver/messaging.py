"""Messages exchanged between a session and the person steering it.

A session asks for input with an `InputRequest` and reports everything it
does as a `StatusUpdate`. Updates are numbered per session so clients can
poll for the slice they have not seen yet.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Optional

from .utils import _new_id, _now_iso

APPROVAL_OPTIONS = ("Approve", "Modify", "Reject")
CONFIRMATION_OPTIONS = ("Approve", "Reject")


class UpdateKind(str, Enum):
    IN_PROGRESS = "in_progress"
    AWAITING_USER_INPUT = "awaiting_user_input"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class InputRequest:
    """A question the session is waiting on."""

    type: str  # choice | text
    message: str
    options: list[str] = field(default_factory=list)
    id: str = field(default_factory=lambda: _new_id("req"))
    created_at: str = field(default_factory=_now_iso)
    deadline: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "InputRequest":
        return cls(
            id=data.get("id", ""),
            type=data.get("type", "choice"),
            message=data.get("message", ""),
            options=list(data.get("options") or []),
            created_at=data.get("created_at", ""),
            deadline=data.get("deadline"),
        )

    def accepts(self, value: str) -> Optional[str]:
        """Return the matching option (case-insensitive, trimmed), or None."""
        cleaned = (value or "").strip().lower()
        for option in self.options:
            if option.lower() == cleaned:
                return option
        return None


@dataclass
class StatusUpdate:
    session_id: str
    kind: UpdateKind
    message: str = ""
    request: Optional[InputRequest] = None
    result: Any = None
    seq: int = 0
    timestamp: str = field(default_factory=_now_iso)

    def to_dict(self) -> dict[str, Any]:
        result = self.result.to_dict() if hasattr(self.result, "to_dict") else self.result
        return {
            "seq": self.seq,
            "session_id": self.session_id,
            "kind": self.kind.value,
            "message": self.message,
            "request": self.request.to_dict() if self.request else None,
            "result": result,
            "timestamp": self.timestamp,
        }
