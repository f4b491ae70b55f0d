from concurrent.futures import ThreadPoolExecutor

import pytest

from app.portcall.modules.prearrival.catalog import OFFICE, get_definition
from app.portcall.modules.prearrival.errors import DocumentValidationError, NetworkError
from app.portcall.modules.prearrival.optimistic import OptimisticSlots
from app.portcall.modules.prearrival.records import (
    APPROVED,
    PENDING_REVIEW,
    REJECTED,
    DocumentRecord,
    approve,
    reject,
)

HEALTH = get_definition("health_decl")


def _pending() -> DocumentRecord:
    return DocumentRecord(
        HEALTH.id, status=PENDING_REVIEW, file_url="https://files.example/h.pdf", file_name="h.pdf"
    )


def _approve(r):
    return approve(r, HEALTH, role=OFFICE)


def _reject(reason):
    return lambda r: reject(r, HEALTH, reason=reason, role=OFFICE)


def test_apply_shows_new_state_before_the_write_settles():
    slots = OptimisticSlots({HEALTH.id: _pending()})
    token = slots.apply(HEALTH.id, _reject("blurry scan"))

    assert slots.view(HEALTH.id).status == REJECTED
    assert slots.view(HEALTH.id).rejection_reason == "blurry scan"
    assert slots.confirmed(HEALTH.id).status == PENDING_REVIEW
    assert slots.is_pending(HEALTH.id)

    slots.commit(HEALTH.id, token)
    assert slots.confirmed(HEALTH.id).status == REJECTED
    assert not slots.is_pending(HEALTH.id)


def test_failed_write_restores_confirmed_state():
    slots = OptimisticSlots({HEALTH.id: _pending()})

    def write():
        raise NetworkError("HTTP 500 from /api/pre-arrival/1/documents/verify")

    outcome = slots.submit(HEALTH.id, _approve, write).result()

    assert outcome.ok is False
    assert "HTTP 500" in outcome.error
    assert outcome.record.status == PENDING_REVIEW
    assert slots.view(HEALTH.id).status == PENDING_REVIEW
    assert not slots.is_pending(HEALTH.id)


def test_successful_write_confirms_the_server_record():
    slots = OptimisticSlots({HEALTH.id: _pending()})
    server_record = _approve(_pending())

    outcome = slots.submit(HEALTH.id, _approve, lambda: server_record).result()

    assert outcome.ok is True
    assert slots.confirmed(HEALTH.id) == server_record
    assert slots.view(HEALTH.id) == server_record


def test_invalid_transition_raises_and_leaves_state_untouched():
    slots = OptimisticSlots({HEALTH.id: _pending()})
    calls = []
    with pytest.raises(DocumentValidationError):
        slots.submit(HEALTH.id, _reject("  "), lambda: calls.append("write"))
    assert calls == []
    assert not slots.is_pending(HEALTH.id)


def test_stale_rollback_does_not_clobber_a_newer_overlay():
    slots = OptimisticSlots({HEALTH.id: _pending()})
    first = slots.apply(HEALTH.id, _reject("blurry"))
    second = slots.apply(HEALTH.id, _approve)

    slots.discard(HEALTH.id, first)
    assert slots.view(HEALTH.id).status == APPROVED

    slots.discard(HEALTH.id, second)
    assert slots.view(HEALTH.id).status == PENDING_REVIEW


def test_submit_runs_write_on_executor():
    slots = OptimisticSlots({HEALTH.id: _pending()})
    with ThreadPoolExecutor(max_workers=1) as pool:
        fut = slots.submit(HEALTH.id, _approve, lambda: _approve(_pending()), executor=pool)
        # The overlay is visible immediately, whatever the write is doing.
        assert slots.view(HEALTH.id).status == APPROVED
        outcome = fut.result(timeout=5)
    assert outcome.ok is True
    assert slots.confirmed(HEALTH.id).status == APPROVED


def test_unknown_slots_view_as_draft():
    slots = OptimisticSlots()
    assert slots.view("registry_cert").status == "draft"
    assert slots.snapshot() == {}
