from __future__ import annotations

import io

from flask import Blueprint, abort, current_app, g, jsonify, request, send_file
from sqlalchemy.orm import Session

from app.portcall.db import db_session
from app.portcall.models import User
from app.portcall.modules.prearrival import service
from app.portcall.modules.prearrival.access import (
    CAP_CREATE,
    CAP_DELETE,
    CAP_EDIT,
    CAP_VIEW,
    CAP_ZIP_DOWNLOAD,
    STATUS_FILTER_ALL,
    checklist_stats,
    party_for,
    slot_access,
    visible_documents,
)
from app.portcall.modules.prearrival.catalog import DOCUMENT_CATALOG, DocumentDefinition, get_definition
from app.portcall.modules.prearrival.errors import (
    DocumentValidationError,
    NoApprovableDocuments,
    RequestConflict,
    TransitionNotAllowed,
)
from app.portcall.modules.prearrival.history import render_thread
from app.portcall.modules.prearrival.models import PortCallRequest
from app.portcall.modules.prearrival.package import HttpFileFetcher, StorageFileFetcher
from app.portcall.modules.prearrival.records import empty_record
from app.portcall.rbac import require_permission, user_capabilities
from app.portcall.storage import StorageError, storage_from_config

bp = Blueprint("prearrival", __name__)

_TRUTHY = ("1", "true", "yes", "on")


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _capabilities() -> frozenset[str]:
    return user_capabilities(getattr(g, "current_user", None))


def _get_request_or_404(s: Session, pk: int) -> PortCallRequest:
    req = s.get(PortCallRequest, pk)
    if not req:
        abort(404)
    return req


def _forbidden(message: str):
    current_app.logger.warning("Forbidden: %s request_id=%s", message, getattr(g, "request_id", None))
    return jsonify({"error": message}), 403


def _payload() -> dict:
    data = request.get_json(silent=True)
    if isinstance(data, dict):
        return data
    return request.form.to_dict()


def _fetcher() -> StorageFileFetcher:
    storage = storage_from_config(current_app.config)
    http = HttpFileFetcher(timeout_seconds=float(current_app.config.get("FILE_FETCH_TIMEOUT_SECONDS") or 30))
    return StorageFileFetcher(storage=storage, fallback=http)


def _request_dict(req: PortCallRequest) -> dict:
    return {
        "id": req.id,
        "request_id": req.request_id,
        "vessel_name": req.vessel_name,
        "port_name": req.port_name,
        "eta": req.eta.isoformat(),
        "due_date": req.due_date.isoformat(),
        "agent_contact": req.agent_contact,
        "notes": req.notes,
        "status": req.status,
        "created_at": req.created_at.isoformat() if req.created_at else None,
        "updated_at": req.updated_at.isoformat() if req.updated_at else None,
    }


def _definition_from(value: str | None) -> DocumentDefinition:
    doc_id = (value or "").strip()
    if not doc_id:
        raise DocumentValidationError("docId is required.")
    return get_definition(doc_id)


@bp.errorhandler(DocumentValidationError)
def _validation_error(e: DocumentValidationError):
    return jsonify({"error": str(e)}), 400


@bp.errorhandler(TransitionNotAllowed)
@bp.errorhandler(RequestConflict)
def _conflict(e: Exception):
    return jsonify({"error": str(e)}), 409


@bp.errorhandler(NoApprovableDocuments)
def _nothing_to_package(e: NoApprovableDocuments):
    current_app.logger.info("Package requested with nothing approved (request=%s)", e.request_id)
    return jsonify({"warning": str(e)}), 409


@bp.errorhandler(StorageError)
def _storage_error(e: StorageError):
    current_app.logger.error("Storage failure (request_id=%s): %s", getattr(g, "request_id", None), e)
    return jsonify({"error": "File storage is unavailable. Please try again."}), 502


# --- Port-call requests ---------------------------------------------------


@bp.get("/pre-arrival")
@require_permission(CAP_VIEW)
def list_requests():
    s = db_session()
    try:
        page = int(request.args.get("page") or 1)
    except ValueError:
        page = 1
    rows, total = service.list_requests(
        s,
        search=request.args.get("q"),
        status=(request.args.get("status") or "").strip() or None,
        page=page,
    )
    return jsonify(
        {
            "requests": [_request_dict(r) for r in rows],
            "total": total,
            "page": max(1, page),
            "per_page": service.PAGE_SIZE,
        }
    )


@bp.post("/pre-arrival")
@require_permission(CAP_CREATE)
def create_request():
    s = db_session()
    u = _current_user()
    data = _payload()
    req = service.create_request(
        s,
        request_id=data.get("request_id") or "",
        vessel_name=data.get("vessel_name") or "",
        port_name=data.get("port_name") or "",
        eta=service.parse_date(data.get("eta"), field_name="ETA"),
        due_date=service.parse_date(data.get("due_date"), field_name="Due date"),
        agent_contact=data.get("agent_contact"),
        notes=data.get("notes"),
        status=(data.get("status") or "draft").strip(),
        user=u,
    )
    s.commit()
    return jsonify({"request": _request_dict(req)}), 201


@bp.get("/pre-arrival/<int:pk>")
@require_permission(CAP_VIEW)
def request_detail(pk: int):
    s = db_session()
    req = _get_request_or_404(s, pk)
    caps = _capabilities()
    read_only = (request.args.get("read_only") or "").strip().lower() in _TRUTHY
    status_filter = (request.args.get("status") or STATUS_FILTER_ALL).strip().lower()

    records = service.records_for(req)
    visible = visible_documents(DOCUMENT_CATALOG, caps, records, read_only=read_only, status_filter=status_filter)

    checklist = []
    documents = []
    for definition in visible:
        record = records.get(definition.id) or empty_record(definition.id)
        access = slot_access(caps, definition, read_only=read_only)
        documents.append(record.to_dict())
        checklist.append(
            {
                "doc_id": definition.id,
                "name": definition.display_name,
                "owner": definition.owning_party,
                "can_upload": access.can_upload,
                "can_verify": access.can_verify,
                "document": record.to_dict(),
            }
        )

    return jsonify(
        {
            "request": _request_dict(req),
            "read_only": read_only,
            "status_filter": status_filter,
            "role": party_for(caps),
            "checklist": checklist,
            "documents": documents,
            "stats": checklist_stats(DOCUMENT_CATALOG, caps, records),
        }
    )


@bp.patch("/pre-arrival/<int:pk>")
@require_permission(CAP_EDIT)
def update_request(pk: int):
    s = db_session()
    u = _current_user()
    req = _get_request_or_404(s, pk)
    data = _payload()
    service.update_request(
        s,
        req,
        user=u,
        request_id=data.get("request_id"),
        vessel_name=data.get("vessel_name"),
        port_name=data.get("port_name"),
        eta=service.parse_date(data["eta"], field_name="ETA") if data.get("eta") else None,
        due_date=service.parse_date(data["due_date"], field_name="Due date") if data.get("due_date") else None,
        agent_contact=data.get("agent_contact"),
        notes=data.get("notes"),
        status=data.get("status"),
    )
    s.commit()
    return jsonify({"request": _request_dict(req)})


@bp.delete("/pre-arrival/<int:pk>")
@require_permission(CAP_DELETE)
def delete_request(pk: int):
    s = db_session()
    u = _current_user()
    req = _get_request_or_404(s, pk)
    service.delete_request(s, req, user=u)
    s.commit()
    return jsonify({"ok": True})


# --- Checklist slots ------------------------------------------------------


@bp.patch("/pre-arrival/<int:pk>/documents")
@require_permission(CAP_VIEW)
def write_document(pk: int):
    """
    Multipart write: docId, file?, note?. Without a file the note is saved
    on its own (an empty note clears it).
    """
    s = db_session()
    u = _current_user()
    req = _get_request_or_404(s, pk)
    caps = _capabilities()
    definition = _definition_from(request.form.get("docId"))

    if not slot_access(caps, definition).can_upload:
        return _forbidden(f"You cannot upload {definition.display_name}.")

    role = party_for(caps)
    f = request.files.get("file")
    if f and f.filename:
        file_bytes = f.read()
        record = service.upload_document(
            s,
            req,
            definition,
            file_bytes=file_bytes,
            filename=f.filename,
            content_type=f.mimetype or None,
            role=role,
            user=u,
            storage=storage_from_config(current_app.config),
            note=request.form.get("note"),
        )
    elif "note" in request.form:
        record = service.annotate_document(s, req, definition, note=request.form.get("note") or "", role=role, user=u)
    else:
        raise DocumentValidationError("No file or note provided.")

    s.commit()
    return jsonify({"document": record.to_dict()})


@bp.patch("/pre-arrival/<int:pk>/documents/verify")
@require_permission(CAP_VIEW)
def verify_document(pk: int):
    s = db_session()
    u = _current_user()
    req = _get_request_or_404(s, pk)
    caps = _capabilities()
    data = request.get_json(silent=True) or {}
    definition = _definition_from(data.get("docId"))

    if not slot_access(caps, definition).can_verify:
        return _forbidden(f"You cannot verify {definition.display_name}.")

    record = service.verify_document(
        s,
        req,
        definition,
        status=(data.get("status") or "").strip().lower(),
        reason=data.get("reason"),
        role=party_for(caps),
        user=u,
    )
    s.commit()
    return jsonify({"document": record.to_dict()})


@bp.get("/pre-arrival/<int:pk>/documents/<doc_id>/history")
@require_permission(CAP_VIEW)
def document_history(pk: int, doc_id: str):
    s = db_session()
    req = _get_request_or_404(s, pk)
    definition = _definition_from(doc_id)
    if not slot_access(_capabilities(), definition).can_view:
        return _forbidden(f"You cannot view {definition.display_name}.")
    record = service.records_for(req).get(definition.id) or empty_record(definition.id)
    return jsonify({"doc_id": definition.id, "name": definition.display_name, **render_thread(record)})


# --- Package --------------------------------------------------------------


@bp.get("/pre-arrival/<int:pk>/package")
@require_permission(CAP_ZIP_DOWNLOAD)
def download_package(pk: int):
    s = db_session()
    u = _current_user()
    req = _get_request_or_404(s, pk)
    result = service.build_request_package(
        s,
        req,
        fetch=_fetcher(),
        user=u,
        max_workers=current_app.config.get("ARCHIVE_FETCH_WORKERS"),
    )
    s.commit()

    response = send_file(
        io.BytesIO(result.data),
        mimetype="application/zip",
        as_attachment=True,
        download_name=result.filename,
        max_age=0,
    )
    if result.skipped:
        response.headers["X-Package-Skipped"] = ",".join(sorted(result.skipped))
    return response


@bp.post("/pre-arrival/<int:pk>/package/share")
@require_permission(CAP_ZIP_DOWNLOAD)
def share_package(pk: int):
    s = db_session()
    u = _current_user()
    req = _get_request_or_404(s, pk)
    payload = service.share_request_package(
        s,
        req,
        fetch=_fetcher(),
        storage=storage_from_config(current_app.config),
        user=u,
        max_workers=current_app.config.get("ARCHIVE_FETCH_WORKERS"),
    )
    s.commit()
    return jsonify({"share": payload.to_dict()})


@bp.post("/archive-upload")
@require_permission(CAP_ZIP_DOWNLOAD)
def archive_upload():
    name = (request.args.get("name") or "").strip()
    if not name:
        raise DocumentValidationError("name is required.")
    data = request.get_data(cache=False)
    if not data:
        raise DocumentValidationError("Archive body is empty.")
    url = service.store_archive(storage_from_config(current_app.config), name, data)
    current_app.logger.info("Archive stored: name=%s bytes=%d request_id=%s", name, len(data), getattr(g, "request_id", None))
    return jsonify({"url": url})
