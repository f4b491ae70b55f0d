import json
from typing import Any

from flask import g, has_request_context, request
from sqlalchemy.orm import Session

from app.portcall.models import AuditEvent, User


def record_event(
    s: Session,
    *,
    actor: User | None,
    action: str,
    entity_type: str | None = None,
    entity_id: str | None = None,
    reason: str | None = None,
    metadata: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> AuditEvent:
    """Stage an audit row on `s`; the caller's commit makes it durable."""
    client_ip = None
    if has_request_context():
        request_id = request_id or getattr(g, "request_id", None)
        client_ip = request.remote_addr
    event = AuditEvent(
        request_id=request_id,
        actor_user_id=getattr(actor, "id", None),
        actor_user_email=getattr(actor, "email", None),
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        reason=reason,
        metadata_json=json.dumps(metadata, sort_keys=True, default=str) if metadata else None,
        client_ip=client_ip,
    )
    s.add(event)
    return event
