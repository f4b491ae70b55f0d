"""
Pre-arrival service layer.
Handles port-call request CRUD and persistence of checklist slot transitions.

The state machine in records.py works on DocumentRecord values; this module
loads a slot row into a record, runs the transition, and writes the result
(and any new log entries) back.
"""
from __future__ import annotations

import logging
from dataclasses import replace
from datetime import date, datetime
from typing import TYPE_CHECKING

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from app.portcall.audit import record_event
from app.portcall.storage import Storage, new_blob_key

from .catalog import DocumentDefinition
from .errors import DocumentValidationError, RequestConflict
from .models import PortCallDocument, PortCallDocumentLog, PortCallRequest
from .package import FileFetcher, PackageResult, SharePayload, build_package, share_package
from .records import (
    APPROVED,
    DRAFT,
    DocumentRecord,
    LogEntry,
    annotate,
    apply_verification,
    upload,
    validate_upload_size,
)

if TYPE_CHECKING:
    from app.portcall.models import User

logger = logging.getLogger(__name__)

REQUEST_STATUSES = ("draft", "published", "sent", "completed")
PAGE_SIZE = 10
ARCHIVE_PREFIX = "archives"


def normalize_request_id(value: str | None) -> str:
    return (value or "").strip().upper()


def parse_date(value: str | date | None, *, field_name: str) -> date:
    if isinstance(value, date):
        return value
    raw = (value or "").strip()
    if not raw:
        raise DocumentValidationError(f"{field_name} is required.")
    try:
        return date.fromisoformat(raw)
    except ValueError:
        raise DocumentValidationError(f"{field_name} must be a date (YYYY-MM-DD).") from None


def _validate_schedule(eta: date, due_date: date) -> None:
    if due_date >= eta:
        raise DocumentValidationError("Due date must be before the ETA.")


def _ensure_unique_request_id(s: Session, request_id: str, *, exclude_pk: int | None = None) -> None:
    q = s.query(PortCallRequest.id).filter(PortCallRequest.request_id == request_id)
    if exclude_pk is not None:
        q = q.filter(PortCallRequest.id != exclude_pk)
    if q.first() is not None:
        raise RequestConflict(f"Request ID {request_id} already exists.")


def create_request(
    s: Session,
    *,
    request_id: str,
    vessel_name: str,
    port_name: str,
    eta: date,
    due_date: date,
    agent_contact: str | None = None,
    notes: str | None = None,
    status: str = "draft",
    user: User,
) -> PortCallRequest:
    rid = normalize_request_id(request_id)
    if not rid:
        raise DocumentValidationError("Request ID is required.")
    if not (vessel_name or "").strip():
        raise DocumentValidationError("Vessel name is required.")
    if not (port_name or "").strip():
        raise DocumentValidationError("Port name is required.")
    if status not in REQUEST_STATUSES:
        raise DocumentValidationError(f"Invalid status: {status}")
    _validate_schedule(eta, due_date)
    _ensure_unique_request_id(s, rid)

    req = PortCallRequest(
        request_id=rid,
        vessel_name=vessel_name.strip(),
        port_name=port_name.strip(),
        eta=eta,
        due_date=due_date,
        agent_contact=(agent_contact or "").strip() or None,
        notes=(notes or "").strip() or None,
        status=status,
        created_by_user_id=user.id,
        updated_by_user_id=user.id,
    )
    s.add(req)
    s.flush()

    record_event(
        s,
        actor=user,
        action="prearrival.create",
        entity_type="PortCallRequest",
        entity_id=str(req.id),
        metadata={"request_id": req.request_id, "vessel_name": req.vessel_name, "port_name": req.port_name},
    )
    return req


def update_request(
    s: Session,
    req: PortCallRequest,
    *,
    user: User,
    request_id: str | None = None,
    vessel_name: str | None = None,
    port_name: str | None = None,
    eta: date | None = None,
    due_date: date | None = None,
    agent_contact: str | None = None,
    notes: str | None = None,
    status: str | None = None,
) -> PortCallRequest:
    """Update request metadata. Fields left as None are unchanged."""
    changes: dict[str, dict[str, object]] = {}

    if request_id is not None:
        rid = normalize_request_id(request_id)
        if not rid:
            raise DocumentValidationError("Request ID is required.")
        if rid != req.request_id:
            _ensure_unique_request_id(s, rid, exclude_pk=req.id)
            changes["request_id"] = {"from": req.request_id, "to": rid}
            req.request_id = rid

    if status is not None and status != req.status:
        if status not in REQUEST_STATUSES:
            raise DocumentValidationError(f"Invalid status: {status}")
        changes["status"] = {"from": req.status, "to": status}
        req.status = status

    new_eta = eta if eta is not None else req.eta
    new_due = due_date if due_date is not None else req.due_date
    _validate_schedule(new_eta, new_due)
    if new_eta != req.eta:
        changes["eta"] = {"from": str(req.eta), "to": str(new_eta)}
        req.eta = new_eta
    if new_due != req.due_date:
        changes["due_date"] = {"from": str(req.due_date), "to": str(new_due)}
        req.due_date = new_due

    for name, value in (("vessel_name", vessel_name), ("port_name", port_name)):
        if value is None:
            continue
        text = value.strip()
        if not text:
            raise DocumentValidationError(f"{name.replace('_', ' ').capitalize()} is required.")
        if getattr(req, name) != text:
            changes[name] = {"from": getattr(req, name), "to": text}
            setattr(req, name, text)

    if agent_contact is not None and (agent_contact.strip() or None) != req.agent_contact:
        changes["agent_contact"] = {"from": req.agent_contact, "to": agent_contact.strip() or None}
        req.agent_contact = agent_contact.strip() or None

    if notes is not None and (notes.strip() or None) != req.notes:
        changes["notes"] = {"from": "...", "to": "..."}  # Don't log full text
        req.notes = notes.strip() or None

    req.updated_at = datetime.utcnow()
    req.updated_by_user_id = user.id

    if changes:
        record_event(
            s,
            actor=user,
            action="prearrival.update",
            entity_type="PortCallRequest",
            entity_id=str(req.id),
            metadata={"request_id": req.request_id, "changes": changes},
        )
    return req


def delete_request(s: Session, req: PortCallRequest, *, user: User) -> None:
    record_event(
        s,
        actor=user,
        action="prearrival.delete",
        entity_type="PortCallRequest",
        entity_id=str(req.id),
        metadata={"request_id": req.request_id, "documents": len(req.documents)},
    )
    s.delete(req)


def list_requests(
    s: Session,
    *,
    search: str | None = None,
    status: str | None = None,
    page: int = 1,
    per_page: int = PAGE_SIZE,
) -> tuple[list[PortCallRequest], int]:
    q = s.query(PortCallRequest)
    term = (search or "").strip().lower()
    if term:
        like = f"%{term}%"
        q = q.filter(
            or_(
                func.lower(PortCallRequest.port_name).like(like),
                func.lower(PortCallRequest.request_id).like(like),
            )
        )
    if status:
        if status not in REQUEST_STATUSES:
            raise DocumentValidationError(f"Invalid status: {status}")
        q = q.filter(PortCallRequest.status == status)
    total = q.count()
    page = max(1, page)
    rows = (
        q.order_by(PortCallRequest.created_at.desc(), PortCallRequest.id.desc())
        .offset((page - 1) * per_page)
        .limit(per_page)
        .all()
    )
    return rows, total


def record_from_row(row: PortCallDocument) -> DocumentRecord:
    return DocumentRecord(
        doc_id=row.doc_id,
        status=row.status or DRAFT,
        file_url=row.file_url or None,
        file_name=row.file_name or None,
        note=row.note or "",
        rejection_reason=row.rejection_reason or "",
        log=tuple(
            LogEntry(kind=e.kind, message=e.message, role=e.role, created_at=e.created_at)
            for e in row.log_entries
        ),
    )


def records_for(req: PortCallRequest) -> dict[str, DocumentRecord]:
    return {row.doc_id: record_from_row(row) for row in req.documents}


def _slot(s: Session, req: PortCallRequest, doc_id: str) -> PortCallDocument:
    for row in req.documents:
        if row.doc_id == doc_id:
            return row
    row = PortCallDocument(request_pk=req.id, doc_id=doc_id, status=DRAFT, note="", rejection_reason="")
    req.documents.append(row)
    s.flush()
    return row


def _store(row: PortCallDocument, before: DocumentRecord, after: DocumentRecord, *, user: User) -> None:
    row.status = after.status
    row.file_url = after.file_url
    row.file_name = after.file_name
    row.note = after.note
    row.rejection_reason = after.rejection_reason
    row.updated_at = datetime.utcnow()
    # The log only grows; persist what the transition appended.
    for entry in after.log[len(before.log):]:
        row.log_entries.append(
            PortCallDocumentLog(
                kind=entry.kind,
                message=entry.message,
                role=entry.role,
                created_at=entry.created_at,
                author_user_id=user.id,
            )
        )


def upload_document(
    s: Session,
    req: PortCallRequest,
    definition: DocumentDefinition,
    *,
    file_bytes: bytes,
    filename: str,
    content_type: str | None,
    role: str,
    user: User,
    storage: Storage,
    note: str | None = None,
) -> DocumentRecord:
    validate_upload_size(len(file_bytes))
    row = _slot(s, req, definition.id)
    before = record_from_row(row)

    key = new_blob_key(f"prearrival/{req.id}/{definition.id}", filename)
    display_name = (filename or "").replace("\\", "/").rsplit("/", 1)[-1] or key.rsplit("/", 1)[-1]
    # Run the transition first so a rejected upload writes nothing to storage.
    after = upload(
        before,
        definition,
        file_url=storage.url_for(key),
        file_name=display_name,
        size_bytes=len(file_bytes),
        role=role,
        note=note,
    )
    url = storage.put_bytes(key, file_bytes, content_type=content_type)
    if url != after.file_url:
        after = replace(after, file_url=url)
    _store(row, before, after, user=user)
    row.storage_key = key
    row.size_bytes = len(file_bytes)
    row.content_type = content_type
    row.uploaded_at = datetime.utcnow()
    row.uploaded_by_user_id = user.id
    logger.info("Slot upload: request=%s doc=%s status=%s bytes=%d", req.request_id, definition.id, after.status, len(file_bytes))

    record_event(
        s,
        actor=user,
        action="prearrival.doc.upload",
        entity_type="PortCallDocument",
        entity_id=str(row.id),
        metadata={
            "request_id": req.request_id,
            "doc_id": definition.id,
            "file_name": display_name,
            "size_bytes": len(file_bytes),
            "status": after.status,
        },
    )
    return after


def annotate_document(
    s: Session,
    req: PortCallRequest,
    definition: DocumentDefinition,
    *,
    note: str,
    role: str,
    user: User,
) -> DocumentRecord:
    row = _slot(s, req, definition.id)
    before = record_from_row(row)
    after = annotate(before, note=note, role=role)
    _store(row, before, after, user=user)
    record_event(
        s,
        actor=user,
        action="prearrival.doc.note",
        entity_type="PortCallDocument",
        entity_id=str(row.id),
        metadata={"request_id": req.request_id, "doc_id": definition.id, "cleared": not after.note},
    )
    return after


def verify_document(
    s: Session,
    req: PortCallRequest,
    definition: DocumentDefinition,
    *,
    status: str,
    reason: str | None,
    role: str,
    user: User,
) -> DocumentRecord:
    row = _slot(s, req, definition.id)
    before = record_from_row(row)
    after = apply_verification(before, definition, status=status, role=role, reason=reason)
    _store(row, before, after, user=user)
    logger.info("Slot verified: request=%s doc=%s %s -> %s", req.request_id, definition.id, before.status, after.status)
    record_event(
        s,
        actor=user,
        action="prearrival.doc.approve" if after.status == APPROVED else "prearrival.doc.reject",
        entity_type="PortCallDocument",
        entity_id=str(row.id),
        reason=after.rejection_reason or None,
        metadata={"request_id": req.request_id, "doc_id": definition.id, "from": before.status, "to": after.status},
    )
    return after


def build_request_package(
    s: Session,
    req: PortCallRequest,
    *,
    fetch: FileFetcher,
    user: User,
    max_workers: int | None = None,
) -> PackageResult:
    result = build_package(records_for(req), req.request_id, fetch=fetch, max_workers=max_workers)
    record_event(
        s,
        actor=user,
        action="prearrival.package.download",
        entity_type="PortCallRequest",
        entity_id=str(req.id),
        metadata={"request_id": req.request_id, "files": len(result.included), "skipped": sorted(result.skipped)},
    )
    return result


def store_archive(storage: Storage, name: str, data: bytes) -> str:
    key = new_blob_key(ARCHIVE_PREFIX, name)
    return storage.put_bytes(key, data, content_type="application/zip")


def share_request_package(
    s: Session,
    req: PortCallRequest,
    *,
    fetch: FileFetcher,
    storage: Storage,
    user: User,
    max_workers: int | None = None,
) -> SharePayload:
    result = build_package(records_for(req), req.request_id, fetch=fetch, max_workers=max_workers)
    payload = share_package(
        result,
        vessel_name=req.vessel_name,
        port_name=req.port_name,
        upload=lambda name, data: store_archive(storage, name, data),
    )
    record_event(
        s,
        actor=user,
        action="prearrival.package.share",
        entity_type="PortCallRequest",
        entity_id=str(req.id),
        metadata={"request_id": req.request_id, "files": len(result.included), "url": payload.url},
    )
    return payload
