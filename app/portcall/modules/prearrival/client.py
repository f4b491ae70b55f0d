"""
HTTP client for the pre-arrival document endpoints.

Size and rejection-reason checks run locally and raise
DocumentValidationError before anything is sent.
"""
from __future__ import annotations

from concurrent.futures import Executor, Future
from dataclasses import dataclass, field
from typing import Any

import httpx

from .catalog import DocumentDefinition
from .errors import DocumentValidationError, NetworkError
from .optimistic import OptimisticSlots
from .records import APPROVED, REJECTED, DocumentRecord, approve, reject, validate_upload_size

API_PREFIX = "/api/pre-arrival"


@dataclass
class PreArrivalClient:
    base_url: str
    csrf_token: str | None = None
    timeout_seconds: float = 30.0
    http: httpx.Client | None = field(default=None, repr=False)

    def _client(self) -> httpx.Client:
        if self.http is None:
            self.http = httpx.Client(base_url=self.base_url.rstrip("/"), timeout=self.timeout_seconds)
        return self.http

    def _headers(self) -> dict[str, str]:
        return {"X-CSRF-Token": self.csrf_token} if self.csrf_token else {}

    def _send(self, method: str, path: str, *, headers: dict[str, str] | None = None, **kwargs: Any) -> dict[str, Any]:
        try:
            response = self._client().request(method, path, headers={**self._headers(), **(headers or {})}, **kwargs)
        except httpx.HTTPError as e:
            raise NetworkError(f"{method} {path} failed: {e}") from e
        try:
            body = response.json()
        except ValueError:
            body = {}
        if response.is_error:
            message = body.get("error") if isinstance(body, dict) else None
            raise NetworkError(message or f"HTTP {response.status_code} from {path}")
        return body if isinstance(body, dict) else {}

    def get_request(self, request_pk: int) -> dict[str, Any]:
        return self._send("GET", f"{API_PREFIX}/{request_pk}")

    def documents(self, request_pk: int) -> dict[str, DocumentRecord]:
        body = self.get_request(request_pk)
        return {d["doc_id"]: DocumentRecord.from_dict(d) for d in body.get("documents") or []}

    def upload_document(
        self,
        request_pk: int,
        definition: DocumentDefinition,
        *,
        file_bytes: bytes | None = None,
        filename: str | None = None,
        note: str | None = None,
    ) -> DocumentRecord:
        if file_bytes is not None:
            validate_upload_size(len(file_bytes))
        data = {"docId": definition.id, "name": definition.display_name, "owner": definition.owning_party}
        if note:
            data["note"] = note
        files = None
        if file_bytes is not None:
            files = {"file": (filename or f"{definition.id}.bin", file_bytes)}
        body = self._send("PATCH", f"{API_PREFIX}/{request_pk}/documents", data=data, files=files)
        return DocumentRecord.from_dict(body["document"])

    def verify_document(self, request_pk: int, doc_id: str, status: str, reason: str | None = None) -> DocumentRecord:
        if status not in (APPROVED, REJECTED):
            raise DocumentValidationError(f"Invalid verification status: {status!r}")
        if status == REJECTED and not (reason or "").strip():
            raise DocumentValidationError("A rejection reason is required.")
        body = self._send(
            "PATCH",
            f"{API_PREFIX}/{request_pk}/documents/verify",
            json={"docId": doc_id, "status": status, "reason": reason or ""},
        )
        return DocumentRecord.from_dict(body["document"])

    def upload_archive(self, name: str, data: bytes) -> str:
        body = self._send(
            "POST",
            "/api/archive-upload",
            params={"name": name},
            content=data,
            headers={"Content-Type": "application/zip"},
        )
        return body["url"]

    def approve_optimistic(
        self,
        slots: OptimisticSlots,
        request_pk: int,
        definition: DocumentDefinition,
        *,
        role: str,
        executor: Executor | None = None,
    ) -> Future:
        return slots.submit(
            definition.id,
            lambda r: approve(r, definition, role=role),
            lambda: self.verify_document(request_pk, definition.id, APPROVED),
            executor=executor,
        )

    def reject_optimistic(
        self,
        slots: OptimisticSlots,
        request_pk: int,
        definition: DocumentDefinition,
        *,
        reason: str,
        role: str,
        executor: Executor | None = None,
    ) -> Future:
        return slots.submit(
            definition.id,
            lambda r: reject(r, definition, reason=reason, role=role),
            lambda: self.verify_document(request_pk, definition.id, REJECTED, reason),
            executor=executor,
        )
