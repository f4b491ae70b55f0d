"""
Capability rules for the pre-arrival checklist.

Everything here is a pure function of the caller's capability set (the
permission keys their roles grant) and the catalog/records. The HTTP layer
only resolves capabilities and asks these functions what to show or allow.
"""
from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass

from .catalog import OFFICE, SHIP, DocumentDefinition
from .errors import DocumentValidationError
from .records import APPROVED, DRAFT, REJECTED, DocumentRecord, empty_record

CAP_VIEW = "prearrival.view"
CAP_CREATE = "prearrival.create"
CAP_EDIT = "prearrival.edit"
CAP_DELETE = "prearrival.delete"
CAP_UPLOAD = "prearrival.upload"
CAP_VERIFY = "prearrival.verify"
CAP_VIEW_ALL = "prearrival.viewall"
CAP_ADMIN = "prearrival.admin"
CAP_ZIP_DOWNLOAD = "zip.download"

STATUS_FILTER_ALL = "all"
STATUS_FILTER_PENDING = "pending"
STATUS_FILTERS = (STATUS_FILTER_ALL, APPROVED, REJECTED, STATUS_FILTER_PENDING)


@dataclass(frozen=True)
class SlotAccess:
    can_view: bool
    can_upload: bool
    can_verify: bool


def sees_all(capabilities: Iterable[str]) -> bool:
    caps = set(capabilities)
    return CAP_ADMIN in caps or CAP_VIEW_ALL in caps


def slot_access(
    capabilities: Iterable[str],
    definition: DocumentDefinition,
    *,
    read_only: bool = False,
) -> SlotAccess:
    caps = set(capabilities)
    if sees_all(caps):
        can_view = True
    elif CAP_VERIFY in caps:
        can_view = definition.owning_party == OFFICE
    elif CAP_UPLOAD in caps:
        can_view = definition.owning_party == SHIP
    else:
        can_view = False

    # Reviewers decide ship-submitted evidence only; office slots are self-attested.
    can_verify = definition.is_ship_owned and (CAP_VERIFY in caps or CAP_ADMIN in caps)

    if read_only:
        return SlotAccess(can_view=can_view, can_upload=False, can_verify=False)
    return SlotAccess(can_view=can_view, can_upload=can_view, can_verify=can_verify)


def party_for(capabilities: Iterable[str]) -> str:
    """Which side of the conversation the caller speaks for."""
    caps = set(capabilities)
    if caps & {CAP_ADMIN, CAP_VERIFY, CAP_VIEW_ALL}:
        return OFFICE
    return SHIP


def _record(records: Mapping[str, DocumentRecord] | None, doc_id: str) -> DocumentRecord:
    if records and doc_id in records:
        return records[doc_id]
    return empty_record(doc_id)


def matches_status(record: DocumentRecord, status_filter: str) -> bool:
    if status_filter == STATUS_FILTER_ALL:
        return True
    if status_filter == STATUS_FILTER_PENDING:
        return record.is_pending
    return (record.status or DRAFT) == status_filter


def visible_documents(
    catalog: Iterable[DocumentDefinition],
    capabilities: Iterable[str],
    records: Mapping[str, DocumentRecord] | None = None,
    *,
    read_only: bool = False,
    status_filter: str = STATUS_FILTER_ALL,
) -> list[DocumentDefinition]:
    if status_filter not in STATUS_FILTERS:
        raise DocumentValidationError(f"Invalid status filter: {status_filter!r}")
    caps = frozenset(capabilities)

    docs = [d for d in catalog if slot_access(caps, d).can_view]
    if status_filter != STATUS_FILTER_ALL:
        docs = [d for d in docs if matches_status(_record(records, d.id), status_filter)]

    if read_only:
        return [d for d in docs if _record(records, d.id).status == APPROVED]

    # sorted() is stable, so catalog order survives within each party.
    return sorted(docs, key=lambda d: 0 if d.owning_party == SHIP else 1)


def progress_label(capabilities: Iterable[str]) -> str:
    caps = set(capabilities)
    if CAP_ADMIN in caps:
        return "Total Pack Progress"
    if CAP_UPLOAD in caps:
        return "Submissions"
    return "Office Verifications"


def checklist_stats(
    catalog: Iterable[DocumentDefinition],
    capabilities: Iterable[str],
    records: Mapping[str, DocumentRecord] | None = None,
) -> dict[str, object]:
    caps = frozenset(capabilities)
    mine = [_record(records, d.id) for d in catalog if slot_access(caps, d).can_view]
    return {
        "total": len(mine),
        "uploaded": sum(1 for r in mine if r.has_file),
        "approved": sum(1 for r in mine if r.status == APPROVED),
        "rejected": sum(1 for r in mine if r.status == REJECTED),
        "pending": sum(1 for r in mine if r.is_pending),
        "label": progress_label(caps),
    }
