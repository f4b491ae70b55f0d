"""
Pre-arrival package assembly.

Bundles the approved, filed slots of one port-call request into a zip:

    PreArrival_Pack_<request_id>/
        Ship_Documents/<doc name>_<file name>
        Admin_Documents/<doc name>_<file name>

The archive is a snapshot of the records passed in; approvals made after
the build are not reflected.
"""
from __future__ import annotations

import io
import logging
import re
import zipfile
from collections.abc import Callable, Mapping
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timezone
from urllib.parse import quote

import httpx

from app.portcall.storage import Storage

from .catalog import SHIP, DocumentDefinition, find_definition
from .errors import NoApprovableDocuments
from .records import APPROVED, DocumentRecord

logger = logging.getLogger(__name__)

SHIP_FOLDER = "Ship_Documents"
ADMIN_FOLDER = "Admin_Documents"

_UNSAFE_CHARS = re.compile(r'[/\\?%*:|"<>]')
# Fixed entry timestamp so identical snapshots produce identical archives.
_ZIP_DATE_TIME = (1980, 1, 1, 0, 0, 0)

FileFetcher = Callable[[str], bytes]
BlobUploader = Callable[[str, bytes], str]


def sanitize_document_name(name: str) -> str:
    return _UNSAFE_CHARS.sub("-", name or "").strip() or "document"


def root_folder(request_id: str) -> str:
    return f"PreArrival_Pack_{request_id}"


def archive_filename(request_id: str) -> str:
    return f"{root_folder(request_id)}.zip"


def share_blob_name(request_id: str, now: datetime | None = None) -> str:
    ts = int((now or datetime.now(timezone.utc)).timestamp() * 1000)
    return f"PreArrival_{request_id}_{ts}.zip"


@dataclass(frozen=True)
class PackageItem:
    doc_id: str
    display_name: str
    owning_party: str
    file_url: str
    file_name: str

    @property
    def folder(self) -> str:
        return SHIP_FOLDER if self.owning_party == SHIP else ADMIN_FOLDER

    @property
    def entry_name(self) -> str:
        original = (self.file_name or "").replace("\\", "/").rsplit("/", 1)[-1] or self.doc_id
        return f"{sanitize_document_name(self.display_name)}_{original}"


@dataclass
class PackageResult:
    request_id: str
    data: bytes
    included: list[str] = field(default_factory=list)
    skipped: dict[str, str] = field(default_factory=dict)

    @property
    def filename(self) -> str:
        return archive_filename(self.request_id)


def select_items(
    records: Mapping[str, DocumentRecord],
    lookup: Callable[[str], DocumentDefinition | None] = find_definition,
) -> list[PackageItem]:
    items = []
    for doc_id, record in records.items():
        if record.status != APPROVED or not record.file_url:
            continue
        definition = lookup(doc_id)
        if definition is None:
            logger.warning("Package: skipping %s (not in catalog)", doc_id)
            continue
        items.append(
            PackageItem(
                doc_id=doc_id,
                display_name=definition.display_name,
                owning_party=definition.owning_party,
                file_url=record.file_url,
                file_name=record.file_name or doc_id,
            )
        )
    return items


def _fetch_all(items: list[PackageItem], fetch: FileFetcher, max_workers: int | None) -> tuple[dict[str, bytes], dict[str, str]]:
    fetched: dict[str, bytes] = {}
    errors: dict[str, str] = {}
    workers = max(1, min(len(items), max_workers or len(items)))
    with ThreadPoolExecutor(max_workers=workers) as pool:
        futures = {pool.submit(fetch, item.file_url): item for item in items}
        for future in as_completed(futures):
            item = futures[future]
            try:
                fetched[item.doc_id] = future.result()
            except Exception as exc:
                # One unreachable file must not sink the whole pack.
                logger.warning("Package: failed to fetch %s (%s): %s", item.doc_id, item.file_url, exc)
                errors[item.doc_id] = str(exc)
    return fetched, errors


def build_package(
    records: Mapping[str, DocumentRecord],
    request_id: str,
    *,
    fetch: FileFetcher,
    max_workers: int | None = None,
) -> PackageResult:
    items = select_items(records)
    if not items:
        raise NoApprovableDocuments(request_id)

    fetched, errors = _fetch_all(items, fetch, max_workers)

    root = root_folder(request_id)
    included: list[str] = []
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", zipfile.ZIP_DEFLATED) as zf:
        for folder in ("", f"{SHIP_FOLDER}/", f"{ADMIN_FOLDER}/"):
            zf.writestr(zipfile.ZipInfo(f"{root}/{folder}", date_time=_ZIP_DATE_TIME), b"")
        for item in sorted(items, key=lambda i: (i.folder, i.entry_name)):
            if item.doc_id not in fetched:
                continue
            arcname = f"{root}/{item.folder}/{item.entry_name}"
            info = zipfile.ZipInfo(arcname, date_time=_ZIP_DATE_TIME)
            info.compress_type = zipfile.ZIP_DEFLATED
            zf.writestr(info, fetched[item.doc_id])
            included.append(arcname)

    logger.info(
        "Package: request=%s included=%d skipped=%d",
        request_id,
        len(included),
        len(errors),
    )
    return PackageResult(request_id=request_id, data=buf.getvalue(), included=included, skipped=errors)


@dataclass(frozen=True)
class SharePayload:
    vessel_name: str
    request_id: str
    port_name: str
    url: str
    message: str
    link: str

    def to_dict(self) -> dict[str, str]:
        return {
            "vessel_name": self.vessel_name,
            "request_id": self.request_id,
            "port_name": self.port_name,
            "url": self.url,
            "message": self.message,
            "link": self.link,
        }


def format_share_payload(*, vessel_name: str, request_id: str, port_name: str, url: str) -> SharePayload:
    message = (
        "*Pre-Arrival Document Pack*\n\n"
        f"*Vessel:* {vessel_name}\n"
        f"*Request ID:* {request_id}\n"
        f"*Port:* {port_name}\n\n"
        "Click the link below to download the approved document ZIP:\n"
        f"{url}"
    )
    return SharePayload(
        vessel_name=vessel_name,
        request_id=request_id,
        port_name=port_name,
        url=url,
        message=message,
        link="https://wa.me/?text=" + quote(message, safe=""),
    )


def share_package(
    result: PackageResult,
    *,
    vessel_name: str,
    port_name: str,
    upload: BlobUploader,
    now: datetime | None = None,
) -> SharePayload:
    name = share_blob_name(result.request_id, now)
    url = upload(name, result.data)
    return format_share_payload(
        vessel_name=vessel_name,
        request_id=result.request_id,
        port_name=port_name,
        url=url,
    )


@dataclass(frozen=True)
class HttpFileFetcher:
    timeout_seconds: float = 30.0
    transport: httpx.BaseTransport | None = None

    def __call__(self, url: str) -> bytes:
        with httpx.Client(timeout=self.timeout_seconds, follow_redirects=True, transport=self.transport) as client:
            response = client.get(url)
            response.raise_for_status()
            return response.content


@dataclass(frozen=True)
class StorageFileFetcher:
    """Reads our own blobs straight from storage; anything else goes over HTTP."""

    storage: Storage
    fallback: FileFetcher

    def __call__(self, url: str) -> bytes:
        key = self.storage.key_for_url(url)
        if key is None:
            return self.fallback(url)
        with self.storage.open(key) as fobj:
            return fobj.read()
