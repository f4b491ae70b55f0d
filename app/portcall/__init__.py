import logging
import os
from datetime import timedelta

from dotenv import load_dotenv
from flask import Flask, g, jsonify, request, session
from sqlalchemy import inspect as sa_inspect

from app.portcall.auth import bp as auth_bp, load_current_user
from app.portcall.config import load_config
from app.portcall.db import init_db, teardown_db_session
from app.portcall.files import bp as files_bp
from app.portcall.modules.prearrival.admin import bp as prearrival_bp
from app.portcall.routes import bp as routes_bp
from app.portcall.security import ensure_csrf_token, validate_csrf

logger = logging.getLogger(__name__)

REQUIRED_TABLES = (
    "users",
    "roles",
    "permissions",
    "audit_events",
    "port_call_requests",
    "port_call_documents",
    "port_call_document_logs",
)
CSRF_EXEMPT_PATHS = ("/health", "/healthz", "/files/")
UNSAFE_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})
S3_REQUIRED_KEYS = ("S3_ENDPOINT", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY")


def _enforce_production_config(cfg) -> None:
    if (cfg.get("ENV") or "").strip().lower() not in ("prod", "production"):
        return
    db_url = str(cfg.get("DATABASE_URL") or "").strip()
    if not db_url:
        raise RuntimeError("Production deployments need DATABASE_URL.")
    if db_url.startswith("sqlite"):
        raise RuntimeError("Production deployments cannot run on sqlite; point DATABASE_URL at Postgres.")
    if str(cfg.get("SECRET_KEY") or "") in ("", "change-me"):
        raise RuntimeError("Production deployments need a non-default SECRET_KEY.")


def _probe_storage(app: Flask) -> None:
    if app.config.get("STORAGE_BACKEND") != "s3":
        if not app.config.get("PUBLIC_BASE_URL"):
            app.logger.warning("PUBLIC_BASE_URL is not set; local file URLs will use the requesting host")
        return
    unset = [k for k in S3_REQUIRED_KEYS if not app.config.get(k)]
    if unset:
        app.logger.error("S3 storage selected but not configured; unset: %s", ", ".join(unset))
        return

    from app.portcall.storage import S3Storage, storage_from_config

    storage = storage_from_config(app.config)
    if not isinstance(storage, S3Storage):
        return
    try:
        storage._client().head_bucket(Bucket=storage.bucket)
    except Exception as e:
        app.logger.error("S3 bucket %r is not reachable: %s", storage.bucket, e)
    else:
        app.logger.info("S3 bucket %r reachable", storage.bucket)


def _warn_on_missing_tables(app: Flask) -> None:
    try:
        insp = sa_inspect(app.extensions["sqlalchemy_engine"])
        absent = [name for name in REQUIRED_TABLES if not insp.has_table(name)]
    except Exception:
        app.logger.exception("Could not inspect database schema")
        return
    if absent:
        app.logger.error("Database is missing tables (run `alembic upgrade head`): %s", ", ".join(absent))


def _dispose_engine_after_fork(app: Flask) -> None:
    if not hasattr(os, "register_at_fork"):
        return

    def _child():
        engine = app.extensions.get("sqlalchemy_engine")
        if engine is not None:
            engine.dispose()

    os.register_at_fork(after_in_child=_child)


def _csrf_guard():
    if request.path.startswith(CSRF_EXEMPT_PATHS):
        return None
    ensure_csrf_token()
    session.permanent = True
    if request.method not in UNSAFE_METHODS:
        return None
    # Login/logout establish or drop the session the token lives in.
    if (request.endpoint or "").startswith("auth."):
        return None
    if validate_csrf(request):
        return None
    return jsonify({"error": "CSRF token missing or invalid."}), 400


def _register_error_handlers(app: Flask) -> None:
    def _json_error(status: int, message: str, **extra):
        body = {"error": message}
        body.update({k: v for k, v in extra.items() if v})
        return jsonify(body), status

    @app.errorhandler(400)
    def bad_request(e):
        return _json_error(400, getattr(e, "description", None) or "Bad request.")

    @app.errorhandler(403)
    def forbidden(e):
        return _json_error(403, "Forbidden.", missing_permission=getattr(g, "missing_permission", None))

    @app.errorhandler(404)
    def not_found(e):
        return _json_error(404, "Not found.")

    @app.errorhandler(413)
    def too_large(e):
        return _json_error(413, "Request too large.")

    @app.errorhandler(500)
    def server_error(e):
        rid = getattr(g, "request_id", None)
        app.logger.exception("Unhandled error (request_id=%s)", rid)
        return _json_error(500, "Internal server error.", request_id=rid)


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__)
    app.config.from_mapping(load_config())
    app.config.update(PERMANENT_SESSION_LIFETIME=timedelta(hours=8), SESSION_REFRESH_EACH_REQUEST=True)

    _enforce_production_config(app.config)
    init_db(app)
    _dispose_engine_after_fork(app)
    _probe_storage(app)

    app.before_request(_csrf_guard)
    app.before_request(load_current_user)
    app.teardown_appcontext(teardown_db_session)

    app.register_blueprint(routes_bp)
    app.register_blueprint(files_bp)
    app.register_blueprint(auth_bp, url_prefix="/auth")
    app.register_blueprint(prearrival_bp, url_prefix="/api")

    _register_error_handlers(app)
    _warn_on_missing_tables(app)

    logger.info("Port call app ready (env=%s)", app.config.get("ENV") or "development")
    return app
