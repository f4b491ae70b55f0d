from __future__ import annotations

import threading
import time
import uuid
from collections import defaultdict, deque

from flask import Blueprint, current_app, g, jsonify, request, session
from werkzeug.security import check_password_hash

from app.portcall.audit import record_event
from app.portcall.db import db_session
from app.portcall.models import User
from app.portcall.rbac import user_capabilities
from app.portcall.security import ensure_csrf_token

bp = Blueprint("auth", __name__)


class LoginThrottle:
    """Sliding-window limit on login attempts per client address."""

    def __init__(self, limit: int = 5, window_seconds: int = 300):
        self.limit = limit
        self.window_seconds = window_seconds
        self._hits: dict[str, deque[float]] = defaultdict(deque)
        self._lock = threading.Lock()

    def blocked(self, key: str) -> bool:
        horizon = time.monotonic() - self.window_seconds
        with self._lock:
            hits = self._hits[key]
            while hits and hits[0] <= horizon:
                hits.popleft()
            return len(hits) >= self.limit

    def hit(self, key: str) -> None:
        with self._lock:
            self._hits[key].append(time.monotonic())

    def reset(self, key: str) -> None:
        with self._lock:
            self._hits.pop(key, None)


throttle = LoginThrottle()


def _forget_user() -> None:
    session.pop("user_id", None)
    g.current_user = None


def load_current_user() -> None:
    """Attach the signed-in user (or None) and a request id to `g`."""
    g.request_id = getattr(g, "request_id", None) or uuid.uuid4().hex
    g.current_user = None
    if request.path.startswith(("/health", "/healthz")):
        return

    uid = session.get("user_id")
    if not uid:
        return
    try:
        user = db_session().get(User, int(uid))
    except Exception as e:
        current_app.logger.error("Could not load session user %s; signing out: %s", uid, e)
        _forget_user()
        return
    if user is None or not user.is_active:
        _forget_user()
        return
    g.current_user = user


def _read_credentials() -> tuple[str, str]:
    src = (request.get_json(silent=True) or {}) if request.is_json else request.form
    email = str(src.get("email") or "").strip().lower()
    return email, str(src.get("password") or "")


def describe_user(user: User) -> dict:
    return {
        "id": user.id,
        "email": user.email,
        "roles": sorted(role.key for role in user.roles),
        "capabilities": sorted(user_capabilities(user)),
    }


@bp.get("/csrf")
def csrf():
    return jsonify({"csrf_token": ensure_csrf_token()})


@bp.get("/me")
def me():
    if g.current_user is None:
        return jsonify({"error": "Authentication required."}), 401
    return jsonify({"user": describe_user(g.current_user)})


@bp.post("/login")
def login():
    email, password = _read_credentials()
    client = request.remote_addr or "unknown"
    if throttle.blocked(client):
        return jsonify({"error": "Too many login attempts. Try again in a few minutes."}), 429
    throttle.hit(client)

    s = db_session()
    user = s.query(User).filter(User.email == email).one_or_none()
    if user is None or not user.is_active or not check_password_hash(user.password_hash, password):
        record_event(
            s,
            actor=None,
            action="auth.login_failed",
            entity_type="User",
            entity_id=email,
            reason="Invalid credentials",
            metadata={"email": email, "ip": client},
        )
        s.commit()
        current_app.logger.warning("Failed login for %s from %s", email, client)
        return jsonify({"error": "Invalid credentials."}), 401

    throttle.reset(client)
    session["user_id"] = user.id
    record_event(s, actor=user, action="auth.login", entity_type="User", entity_id=str(user.id))
    s.commit()
    return jsonify({"user": describe_user(user), "csrf_token": ensure_csrf_token()})


@bp.post("/logout")
def logout():
    user = g.current_user
    if user is not None:
        s = db_session()
        record_event(s, actor=user, action="auth.logout", entity_type="User", entity_id=str(user.id))
        s.commit()
    _forget_user()
    return jsonify({"ok": True})
