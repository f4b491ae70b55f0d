import io
import json
import zipfile

import pytest
from werkzeug.security import generate_password_hash

from app.portcall import create_app
from app.portcall.db import session_scope
from app.portcall.models import AuditEvent, Base, Role, User
from app.portcall.modules.prearrival.models import PortCallDocument, PortCallRequest
from scripts.init_db import seed_roles

USERS = {
    "admin@example.com": "super-admin",
    "manager@example.com": "office-manager",
    "office@example.com": "office",
    "ship@example.com": "ship",
}


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("STORAGE_ROOT", str(tmp_path / "storage"))
    monkeypatch.setenv("PUBLIC_BASE_URL", "http://localhost")

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        roles = seed_roles(s)
        for email, role_key in USERS.items():
            u = User(email=email, password_hash=generate_password_hash("pw"), is_active=True)
            u.roles.append(roles[role_key])
            s.add(u)

    return app


def _login(app, email):
    c = app.test_client()
    r = c.post("/auth/login", json={"email": email, "password": "pw"})
    assert r.status_code == 200
    c.environ_base["HTTP_X_CSRF_TOKEN"] = r.json["csrf_token"]
    return c


def _create_request(c, **overrides):
    payload = {
        "request_id": "pcr-001",
        "vessel_name": "MV Northern Star",
        "port_name": "Rotterdam",
        "eta": "2026-11-20",
        "due_date": "2026-11-18",
        "agent_contact": "ops@agent.example",
    }
    payload.update(overrides)
    return c.post("/api/pre-arrival", json=payload)


def _upload(c, pk, doc_id, data=b"%PDF-1.4 test", filename="scan.pdf", note=None):
    form = {"docId": doc_id, "file": (io.BytesIO(data), filename)}
    if note is not None:
        form["note"] = note
    return c.patch(f"/api/pre-arrival/{pk}/documents", data=form, content_type="multipart/form-data")


def _verify(c, pk, doc_id, status, reason=None):
    return c.patch(
        f"/api/pre-arrival/{pk}/documents/verify",
        json={"docId": doc_id, "status": status, "reason": reason},
    )


def test_api_requires_login(app):
    r = app.test_client().get("/api/pre-arrival")
    assert r.status_code == 401


def test_mutations_require_csrf_token(app):
    c = app.test_client()
    c.post("/auth/login", json={"email": "admin@example.com", "password": "pw"})
    r = _create_request(c)
    assert r.status_code == 400
    assert "CSRF" in r.json["error"]


def test_csrf_endpoint_returns_session_token(app):
    c = _login(app, "admin@example.com")
    r = c.get("/auth/csrf")
    assert r.json["csrf_token"] == c.environ_base["HTTP_X_CSRF_TOKEN"]


def test_create_request_normalizes_id_and_validates_schedule(app):
    c = _login(app, "admin@example.com")

    r = _create_request(c)
    assert r.status_code == 201
    assert r.json["request"]["request_id"] == "PCR-001"
    assert r.json["request"]["status"] == "draft"

    r = _create_request(c, request_id=" PCR-001 ")
    assert r.status_code == 409

    r = _create_request(c, request_id="PCR-002", due_date="2026-11-20")
    assert r.status_code == 400
    assert "before the ETA" in r.json["error"]

    r = _create_request(c, request_id="PCR-003", eta="not-a-date")
    assert r.status_code == 400


def test_ship_user_cannot_create_requests(app):
    c = _login(app, "ship@example.com")
    r = _create_request(c)
    assert r.status_code == 403
    assert r.json["missing_permission"] == "prearrival.create"


def test_list_search_and_pagination(app):
    c = _login(app, "admin@example.com")
    for i in range(12):
        port = "Rotterdam" if i % 2 else "Singapore"
        assert _create_request(c, request_id=f"PCR-{i:03d}", port_name=port).status_code == 201

    r = c.get("/api/pre-arrival")
    assert r.json["total"] == 12
    assert len(r.json["requests"]) == 10
    assert len(c.get("/api/pre-arrival?page=2").json["requests"]) == 2

    r = c.get("/api/pre-arrival?q=singa")
    assert r.json["total"] == 6
    assert c.get("/api/pre-arrival?q=pcr-011").json["total"] == 1


def test_update_and_delete_request(app):
    c = _login(app, "admin@example.com")
    pk = _create_request(c).json["request"]["id"]
    _create_request(c, request_id="PCR-999")

    r = c.patch(f"/api/pre-arrival/{pk}", json={"status": "published", "port_name": "Antwerp"})
    assert r.status_code == 200
    assert r.json["request"]["status"] == "published"
    assert r.json["request"]["port_name"] == "Antwerp"

    assert c.patch(f"/api/pre-arrival/{pk}", json={"request_id": "pcr-999"}).status_code == 409
    assert c.patch(f"/api/pre-arrival/{pk}", json={"due_date": "2026-12-01"}).status_code == 400

    assert c.delete(f"/api/pre-arrival/{pk}").status_code == 200
    assert c.get(f"/api/pre-arrival/{pk}").status_code == 404


def test_checklist_visibility_follows_role(app):
    admin = _login(app, "admin@example.com")
    pk = _create_request(admin).json["request"]["id"]

    ship = _login(app, "ship@example.com").get(f"/api/pre-arrival/{pk}").json
    assert ship["role"] == "ship"
    assert len(ship["checklist"]) == 13
    assert {i["owner"] for i in ship["checklist"]} == {"ship"}
    assert ship["stats"]["label"] == "Submissions"

    office = _login(app, "office@example.com").get(f"/api/pre-arrival/{pk}").json
    assert office["role"] == "office"
    assert {i["owner"] for i in office["checklist"]} == {"office"}
    assert len(office["checklist"]) == 12

    full = admin.get(f"/api/pre-arrival/{pk}").json
    owners = [i["owner"] for i in full["checklist"]]
    assert owners == ["ship"] * 13 + ["office"] * 12
    assert full["stats"]["label"] == "Total Pack Progress"
    assert all(d["status"] == "draft" for d in full["documents"])

    assert admin.get(f"/api/pre-arrival/{pk}?status=bogus").status_code == 400


def test_document_review_cycle(app):
    admin = _login(app, "admin@example.com")
    ship = _login(app, "ship@example.com")
    office = _login(app, "office@example.com")
    pk = _create_request(admin).json["request"]["id"]

    r = _upload(ship, pk, "health_decl", filename="health.pdf")
    assert r.status_code == 200
    doc = r.json["document"]
    assert doc["status"] == "pending_review"
    assert doc["file_name"] == "health.pdf"
    assert doc["file_url"].startswith("http://localhost/files/prearrival/")
    assert doc["log"][0]["message"] == "New file uploaded: health.pdf"

    # The stored file is retrievable at its URL.
    r = ship.get(doc["file_url"].replace("http://localhost", ""))
    assert r.status_code == 200
    assert r.data == b"%PDF-1.4 test"

    assert _upload(ship, pk, "registry_cert").status_code == 403
    assert _upload(ship, pk, "health_decl", data=b"x" * 600_000).status_code == 400
    assert _upload(ship, pk, "nonexistent").status_code == 400
    assert _verify(ship, pk, "health_decl", "approved").status_code == 403

    r = _verify(office, pk, "health_decl", "rejected", "  ")
    assert r.status_code == 400

    r = _verify(office, pk, "health_decl", "rejected", "blurry scan")
    assert r.status_code == 200
    assert r.json["document"]["status"] == "rejected"
    assert r.json["document"]["rejection_reason"] == "blurry scan"

    r = _upload(ship, pk, "health_decl", filename="health_v2.pdf", note="rescanned")
    assert r.json["document"]["status"] == "pending_review"

    r = _verify(office, pk, "health_decl", "approved")
    assert r.json["document"]["status"] == "approved"
    assert r.json["document"]["rejection_reason"] == ""

    r = admin.get(f"/api/pre-arrival/{pk}/documents/health_decl/history")
    assert r.status_code == 200
    assert [(m["kind"], m["align"]) for m in r.json["messages"]] == [
        ("upload", "right"),
        ("rejection", "left"),
        ("note", "right"),
        ("approval", "left"),
    ]
    # Reviewers without see-all cannot open ship slot history.
    assert office.get(f"/api/pre-arrival/{pk}/documents/health_decl/history").status_code == 403

    with session_scope(app) as s:
        row = s.query(PortCallDocument).filter(PortCallDocument.doc_id == "health_decl").one()
        assert row.storage_key.startswith(f"prearrival/{pk}/health_decl/")
        assert row.size_bytes == len(b"%PDF-1.4 test")
        actions = [e.action for e in s.query(AuditEvent).order_by(AuditEvent.id).all()]
        assert "prearrival.doc.upload" in actions
        assert "prearrival.doc.reject" in actions
        assert "prearrival.doc.approve" in actions
        reject_ev = s.query(AuditEvent).filter(AuditEvent.action == "prearrival.doc.reject").one()
        assert reject_ev.reason == "blurry scan"
        assert json.loads(reject_ev.metadata_json)["doc_id"] == "health_decl"


def test_office_document_upload_is_self_attested(app):
    office = _login(app, "office@example.com")
    admin = _login(app, "admin@example.com")
    pk = _create_request(admin).json["request"]["id"]

    r = _upload(office, pk, "registry_cert", filename="registry.pdf")
    assert r.status_code == 200
    assert r.json["document"]["status"] == "approved"
    assert _verify(office, pk, "registry_cert", "rejected", "expired").status_code == 403


def test_note_without_file_annotates(app):
    ship = _login(app, "ship@example.com")
    admin = _login(app, "admin@example.com")
    pk = _create_request(admin).json["request"]["id"]

    r = ship.patch(f"/api/pre-arrival/{pk}/documents", data={"docId": "nil_list", "note": "will send tonight"})
    assert r.status_code == 200
    assert r.json["document"]["status"] == "draft"
    assert r.json["document"]["note"] == "will send tonight"

    r = ship.patch(f"/api/pre-arrival/{pk}/documents", data={"docId": "nil_list"})
    assert r.status_code == 400

    r = ship.patch(f"/api/pre-arrival/{pk}/documents", data={"docId": "nil_list", "note": "x" * 121})
    assert r.status_code == 400


def test_read_only_view_lists_only_approved(app):
    admin = _login(app, "admin@example.com")
    pk = _create_request(admin).json["request"]["id"]
    _upload(admin, pk, "health_decl")
    _upload(admin, pk, "registry_cert")

    r = admin.get(f"/api/pre-arrival/{pk}?read_only=1")
    assert [i["doc_id"] for i in r.json["checklist"]] == ["registry_cert"]
    assert r.json["checklist"][0]["can_upload"] is False

    r = admin.get(f"/api/pre-arrival/{pk}?status=pending")
    assert [i["doc_id"] for i in r.json["checklist"]] == ["health_decl"]


def test_package_download_and_share(app):
    admin = _login(app, "admin@example.com")
    office = _login(app, "office@example.com")
    ship = _login(app, "ship@example.com")
    pk = _create_request(admin).json["request"]["id"]

    r = office.get(f"/api/pre-arrival/{pk}/package")
    assert r.status_code == 409
    assert "No approved files" in r.json["warning"]

    _upload(ship, pk, "health_decl", data=b"health", filename="health.pdf")
    _upload(ship, pk, "arms_decl", data=b"arms", filename="arms.pdf")
    _verify(office, pk, "health_decl", "approved")
    _verify(office, pk, "arms_decl", "rejected", "unsigned")
    _upload(office, pk, "registry_cert", data=b"registry", filename="registry.pdf")

    r = office.get(f"/api/pre-arrival/{pk}/package")
    assert r.status_code == 200
    assert r.mimetype == "application/zip"
    assert "PreArrival_Pack_PCR-001.zip" in r.headers["Content-Disposition"]
    with zipfile.ZipFile(io.BytesIO(r.data)) as zf:
        files = {n: zf.read(n) for n in zf.namelist() if not n.endswith("/")}
    assert files == {
        "PreArrival_Pack_PCR-001/Ship_Documents/Maritime Declaration of Health_health.pdf": b"health",
        "PreArrival_Pack_PCR-001/Admin_Documents/Registry Certificate_registry.pdf": b"registry",
    }

    assert ship.get(f"/api/pre-arrival/{pk}/package").status_code == 403

    r = office.post(f"/api/pre-arrival/{pk}/package/share")
    assert r.status_code == 200
    share = r.json["share"]
    assert share["vessel_name"] == "MV Northern Star"
    assert share["port_name"] == "Rotterdam"
    assert share["link"].startswith("https://wa.me/?text=")
    assert share["url"].startswith("http://localhost/files/archives/")
    assert "PreArrival_PCR-001_" in share["url"]

    r = app.test_client().get(share["url"].replace("http://localhost", ""))
    assert r.status_code == 200
    with zipfile.ZipFile(io.BytesIO(r.data)) as zf:
        assert len([n for n in zf.namelist() if not n.endswith("/")]) == 2

    with session_scope(app) as s:
        actions = {e.action for e in s.query(AuditEvent).all()}
        assert {"prearrival.package.download", "prearrival.package.share"} <= actions


def test_archive_upload_endpoint(app):
    office = _login(app, "office@example.com")
    r = office.post(
        "/api/archive-upload?name=PreArrival_PCR-9_1.zip",
        data=b"PK\x03\x04zip",
        content_type="application/zip",
    )
    assert r.status_code == 200
    assert r.json["url"].startswith("http://localhost/files/archives/")
    assert office.post("/api/archive-upload", data=b"x", content_type="application/zip").status_code == 400


def test_deleting_request_removes_its_slots(app):
    admin = _login(app, "admin@example.com")
    pk = _create_request(admin).json["request"]["id"]
    _upload(admin, pk, "health_decl")
    assert admin.delete(f"/api/pre-arrival/{pk}").status_code == 200
    with session_scope(app) as s:
        assert s.query(PortCallRequest).count() == 0
        assert s.query(PortCallDocument).count() == 0


def test_super_admin_role_bypasses_permission_checks(app):
    with session_scope(app) as s:
        role = s.query(Role).filter(Role.key == "super-admin").one()
        role.permissions.clear()
    admin = _login(app, "admin@example.com")
    assert _create_request(admin).status_code == 201
    me = admin.get("/auth/me").json["user"]
    assert "prearrival.admin" in me["capabilities"]


def _stored_files(root):
    return [p for p in root.rglob("*") if p.is_file()]


def test_rejected_upload_leaves_nothing_in_storage(app, tmp_path):
    ship = _login(app, "ship@example.com")
    admin = _login(app, "admin@example.com")
    pk = _create_request(admin).json["request"]["id"]

    r = _upload(ship, pk, "health_decl", note="x" * 121)
    assert r.status_code == 400
    assert _stored_files(tmp_path / "storage") == []

    r = admin.get(f"/api/pre-arrival/{pk}")
    health = next(d for d in r.json["documents"] if d["doc_id"] == "health_decl")
    assert health["status"] == "draft"


def test_file_urls_are_absolute_without_public_base_url(app):
    app.config["PUBLIC_BASE_URL"] = ""
    ship = _login(app, "ship@example.com")
    admin = _login(app, "admin@example.com")
    pk = _create_request(admin).json["request"]["id"]

    r = _upload(ship, pk, "health_decl", filename="health.pdf")
    assert r.status_code == 200
    assert r.json["document"]["file_url"].startswith("http://localhost/files/prearrival/")
