"""
Optimistic coordinator for checklist slots.

A transition is applied as a pending overlay on top of the confirmed record
so the acting user sees it immediately. When the backing write is
acknowledged the server's record becomes the confirmed value; when it fails
the overlay is dropped and the confirmed value shows again.
"""
from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Mapping
from concurrent.futures import Executor, Future
from dataclasses import dataclass

from .records import DocumentRecord, empty_record

logger = logging.getLogger(__name__)

Transition = Callable[[DocumentRecord], DocumentRecord]
BackingWrite = Callable[[], DocumentRecord]


@dataclass(frozen=True)
class WriteOutcome:
    doc_id: str
    ok: bool
    record: DocumentRecord
    error: str | None = None


class OptimisticSlots:
    def __init__(self, confirmed: Mapping[str, DocumentRecord] | None = None) -> None:
        self._confirmed: dict[str, DocumentRecord] = dict(confirmed or {})
        self._pending: dict[str, tuple[int, DocumentRecord]] = {}
        self._seq = 0
        self._lock = threading.Lock()

    def confirmed(self, doc_id: str) -> DocumentRecord:
        with self._lock:
            return self._confirmed.get(doc_id) or empty_record(doc_id)

    def view(self, doc_id: str) -> DocumentRecord:
        with self._lock:
            return self._view(doc_id)

    def _view(self, doc_id: str) -> DocumentRecord:
        if doc_id in self._pending:
            return self._pending[doc_id][1]
        return self._confirmed.get(doc_id) or empty_record(doc_id)

    def snapshot(self) -> dict[str, DocumentRecord]:
        with self._lock:
            ids = set(self._confirmed) | set(self._pending)
            return {doc_id: self._view(doc_id) for doc_id in ids}

    def is_pending(self, doc_id: str) -> bool:
        with self._lock:
            return doc_id in self._pending

    def apply(self, doc_id: str, transition: Transition) -> int:
        """
        Overlay `transition` on the current view. Returns a token identifying
        this overlay; raises whatever the transition raises, leaving state as is.
        """
        with self._lock:
            updated = transition(self._view(doc_id))
            self._seq += 1
            self._pending[doc_id] = (self._seq, updated)
            return self._seq

    def commit(self, doc_id: str, token: int, server_record: DocumentRecord | None = None) -> None:
        with self._lock:
            current = self._pending.get(doc_id)
            if server_record is None and current and current[0] == token:
                server_record = current[1]
            if server_record is not None:
                self._confirmed[doc_id] = server_record
            # A newer overlay stays in place until its own write settles.
            if current and current[0] == token:
                del self._pending[doc_id]

    def discard(self, doc_id: str, token: int) -> DocumentRecord:
        with self._lock:
            current = self._pending.get(doc_id)
            if current and current[0] == token:
                del self._pending[doc_id]
            return self._view(doc_id)

    def submit(
        self,
        doc_id: str,
        transition: Transition,
        write: BackingWrite,
        *,
        executor: Executor | None = None,
    ) -> Future:
        """
        Apply optimistically, then run the backing write. With an executor the
        write runs in the background and the returned future resolves to a
        WriteOutcome; without one it runs inline.
        """
        token = self.apply(doc_id, transition)

        def _settle() -> WriteOutcome:
            try:
                record = write()
            except Exception as exc:
                logger.warning("Optimistic write for %s failed; restoring confirmed state: %s", doc_id, exc)
                restored = self.discard(doc_id, token)
                return WriteOutcome(doc_id=doc_id, ok=False, record=restored, error=str(exc))
            self.commit(doc_id, token, record)
            return WriteOutcome(doc_id=doc_id, ok=True, record=record)

        if executor is not None:
            return executor.submit(_settle)
        fut: Future = Future()
        fut.set_result(_settle())
        return fut
