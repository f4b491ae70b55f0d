from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any

from .catalog import OFFICE
from .records import DocumentRecord, LogEntry

EMPTY_HISTORY_MESSAGE = "No history available for this document."

# Office-authored messages sit on the left, ship-authored on the right.
ALIGN_LEFT = "left"
ALIGN_RIGHT = "right"


def merged_history(record: DocumentRecord) -> list[LogEntry]:
    """Every logged event for the slot, oldest first."""
    return sorted(record.log, key=lambda e: e.created_at)


@dataclass(frozen=True)
class ThreadMessage:
    message: str
    kind: str
    author: str
    align: str
    created_at: str


def _author_label(role: str) -> str:
    return "Office" if role == OFFICE else "Ship"


def render_thread(record: DocumentRecord) -> dict[str, Any]:
    entries = merged_history(record)
    if not entries:
        return {"empty": True, "message": EMPTY_HISTORY_MESSAGE, "messages": []}
    messages = [
        asdict(
            ThreadMessage(
                message=e.message,
                kind=e.kind,
                author=_author_label(e.role),
                align=ALIGN_LEFT if e.role == OFFICE else ALIGN_RIGHT,
                created_at=e.created_at.isoformat(),
            )
        )
        for e in entries
    ]
    return {"empty": False, "message": None, "messages": messages}
