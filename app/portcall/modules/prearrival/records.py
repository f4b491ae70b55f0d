"""
Document records and their verification state machine.

Transitions are pure: each takes a DocumentRecord and returns a new one.
Callers decide how to merge the result into their own store.

    draft -> pending_review -> approved | rejected
    rejected -> pending_review        (re-upload)
    approved -> rejected              (reviewer changes decision)

There is no terminal state; evidence can always be corrected.
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any

from .catalog import OFFICE, SHIP, DocumentDefinition
from .errors import DocumentValidationError, TransitionNotAllowed

DRAFT = "draft"
PENDING_REVIEW = "pending_review"
APPROVED = "approved"
REJECTED = "rejected"
VALID_STATUSES = (DRAFT, PENDING_REVIEW, APPROVED, REJECTED)

LOG_NOTE = "note"
LOG_REJECTION = "rejection"
LOG_APPROVAL = "approval"
LOG_UPLOAD = "upload"
LOG_KINDS = (LOG_NOTE, LOG_REJECTION, LOG_APPROVAL, LOG_UPLOAD)

# 500 KiB, enforced before anything is sent or stored.
MAX_UPLOAD_BYTES = 512_000
NOTE_MAX_LENGTH = 120


@dataclass(frozen=True)
class LogEntry:
    kind: str
    message: str
    role: str
    created_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "message": self.message,
            "role": self.role,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LogEntry":
        created = data.get("created_at")
        if isinstance(created, str):
            created = datetime.fromisoformat(created)
        return cls(
            kind=data.get("kind") or LOG_NOTE,
            message=data.get("message") or "",
            role=data.get("role") or SHIP,
            created_at=created or datetime.utcnow(),
        )


@dataclass(frozen=True)
class DocumentRecord:
    doc_id: str
    status: str = DRAFT
    file_url: str | None = None
    file_name: str | None = None
    note: str = ""
    rejection_reason: str = ""
    log: tuple[LogEntry, ...] = field(default_factory=tuple)

    @property
    def has_file(self) -> bool:
        return bool(self.file_url)

    @property
    def is_pending(self) -> bool:
        """Filed but not yet decided."""
        return self.has_file and self.status not in (APPROVED, REJECTED)

    @property
    def rejection_history(self) -> list[LogEntry]:
        return [e for e in self.log if e.kind == LOG_REJECTION]

    @property
    def notes_history(self) -> list[LogEntry]:
        return [e for e in self.log if e.kind == LOG_NOTE]

    def to_dict(self) -> dict[str, Any]:
        return {
            "doc_id": self.doc_id,
            "status": self.status,
            "file_url": self.file_url,
            "file_name": self.file_name,
            "note": self.note,
            "rejection_reason": self.rejection_reason,
            "log": [e.to_dict() for e in self.log],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DocumentRecord":
        return cls(
            doc_id=data["doc_id"],
            status=data.get("status") or DRAFT,
            file_url=data.get("file_url") or None,
            file_name=data.get("file_name") or None,
            note=data.get("note") or "",
            rejection_reason=data.get("rejection_reason") or "",
            log=tuple(LogEntry.from_dict(e) for e in (data.get("log") or [])),
        )


def empty_record(doc_id: str) -> DocumentRecord:
    return DocumentRecord(doc_id=doc_id)


def validate_upload_size(size_bytes: int) -> None:
    if size_bytes > MAX_UPLOAD_BYTES:
        raise DocumentValidationError("File is too large. Max limit is 500KB.")


def validate_note(note: str | None) -> str:
    text = (note or "").strip()
    if len(text) > NOTE_MAX_LENGTH:
        raise DocumentValidationError(f"Notes are limited to {NOTE_MAX_LENGTH} characters.")
    return text


def _append(record: DocumentRecord, entry: LogEntry) -> tuple[LogEntry, ...]:
    return record.log + (entry,)


def upload(
    record: DocumentRecord,
    definition: DocumentDefinition,
    *,
    file_url: str,
    file_name: str,
    size_bytes: int,
    role: str,
    note: str | None = None,
    at: datetime | None = None,
) -> DocumentRecord:
    """
    File (or replace) the evidence for a slot.

    Ship-owned slots go back to pending_review whatever their prior decision.
    Office-owned slots are self-attested and have no reviewer, so they are
    stored as approved. The live note belongs to the filed version: an
    upload without a note clears it.
    """
    validate_upload_size(size_bytes)
    if not file_url:
        raise DocumentValidationError("Upload did not produce a retrievable URL.")
    text = validate_note(note)
    at = at or datetime.utcnow()

    if definition.owning_party == OFFICE:
        status = APPROVED
        reason = ""
    else:
        status = PENDING_REVIEW
        reason = record.rejection_reason

    if text:
        entry = LogEntry(kind=LOG_NOTE, message=text, role=role, created_at=at)
    else:
        entry = LogEntry(kind=LOG_UPLOAD, message=f"New file uploaded: {file_name}", role=role, created_at=at)

    return replace(
        record,
        status=status,
        file_url=file_url,
        file_name=file_name,
        note=text,
        rejection_reason=reason,
        log=_append(record, entry),
    )


def _require_decidable(record: DocumentRecord, definition: DocumentDefinition) -> None:
    if definition.owning_party != SHIP:
        raise TransitionNotAllowed(f"{definition.display_name} is office-attested and has no review step.")
    if not record.has_file:
        raise TransitionNotAllowed(f"{definition.display_name} has no uploaded file to review.")


def approve(
    record: DocumentRecord,
    definition: DocumentDefinition,
    *,
    role: str,
    at: datetime | None = None,
) -> DocumentRecord:
    _require_decidable(record, definition)
    entry = LogEntry(kind=LOG_APPROVAL, message="Document approved", role=role, created_at=at or datetime.utcnow())
    return replace(record, status=APPROVED, rejection_reason="", log=_append(record, entry))


def reject(
    record: DocumentRecord,
    definition: DocumentDefinition,
    *,
    reason: str,
    role: str,
    at: datetime | None = None,
) -> DocumentRecord:
    text = (reason or "").strip()
    if not text:
        raise DocumentValidationError("A rejection reason is required.")
    _require_decidable(record, definition)
    entry = LogEntry(kind=LOG_REJECTION, message=text, role=role, created_at=at or datetime.utcnow())
    return replace(record, status=REJECTED, rejection_reason=text, log=_append(record, entry))


def annotate(
    record: DocumentRecord,
    *,
    note: str,
    role: str,
    at: datetime | None = None,
) -> DocumentRecord:
    """Replace the live note. A blank note clears it without logging."""
    text = validate_note(note)
    if not text:
        return replace(record, note="")
    entry = LogEntry(kind=LOG_NOTE, message=text, role=role, created_at=at or datetime.utcnow())
    return replace(record, note=text, log=_append(record, entry))


def apply_verification(
    record: DocumentRecord,
    definition: DocumentDefinition,
    *,
    status: str,
    role: str,
    reason: str | None = None,
    at: datetime | None = None,
) -> DocumentRecord:
    if status == APPROVED:
        return approve(record, definition, role=role, at=at)
    if status == REJECTED:
        return reject(record, definition, reason=reason or "", role=role, at=at)
    raise DocumentValidationError(f"Invalid verification status: {status!r}")


def invariant_violations(record: DocumentRecord) -> list[str]:
    errors = []
    if record.status not in VALID_STATUSES:
        errors.append(f"unknown status {record.status!r}")
    if record.status == APPROVED and record.rejection_reason:
        errors.append("approved record carries a rejection reason")
    if record.status != DRAFT and not record.file_url:
        errors.append(f"{record.status} record has no file")
    return errors
