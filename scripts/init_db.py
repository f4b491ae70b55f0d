"""
Database bootstrap: apply Alembic migrations and seed roles/permissions.

Usage:
  python scripts/init_db.py              # seed only
  python scripts/init_db.py --migrate    # alembic upgrade head, then seed

Seeding is idempotent and never overwrites an existing admin password.
"""
from __future__ import annotations

import argparse
import os
import sys
from contextlib import contextmanager
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from werkzeug.security import generate_password_hash

# Ensure repo root is on sys.path when running as a script.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.portcall.models import Permission, Role, User  # noqa: E402
from app.portcall.rbac import SUPER_ADMIN_ROLE  # noqa: E402

PERMISSIONS = {
    "prearrival.view": "Pre-arrival: view requests",
    "prearrival.create": "Pre-arrival: create requests",
    "prearrival.edit": "Pre-arrival: edit requests",
    "prearrival.delete": "Pre-arrival: delete requests",
    "prearrival.upload": "Pre-arrival: upload ship documents",
    "prearrival.verify": "Pre-arrival: verify documents",
    "prearrival.viewall": "Pre-arrival: view every checklist slot",
    "zip.download": "Pre-arrival: download/share document pack",
}

ROLES = {
    SUPER_ADMIN_ROLE: ("Super Administrator", tuple(PERMISSIONS)),
    "office-manager": (
        "Office Manager",
        (
            "prearrival.view",
            "prearrival.create",
            "prearrival.edit",
            "prearrival.delete",
            "prearrival.verify",
            "prearrival.viewall",
            "zip.download",
        ),
    ),
    "office": ("Office Reviewer", ("prearrival.view", "prearrival.verify", "zip.download")),
    "ship": ("Ship Submitter", ("prearrival.view", "prearrival.upload")),
}


def _database_url(database_url: str | None) -> str:
    return (database_url or os.environ.get("DATABASE_URL") or "sqlite:///portcall.db").strip()


@contextmanager
def _session_scope(database_url: str):
    engine = create_engine(database_url, future=True)
    sm = sessionmaker(bind=engine, class_=Session, autoflush=False, expire_on_commit=False, future=True)
    s: Session = sm()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()
        engine.dispose()


def run_migrations(*, database_url: str | None = None) -> None:
    db_url = _database_url(database_url)
    env = (os.environ.get("ENV") or "").strip().lower()
    if env in ("prod", "production") and db_url.startswith("sqlite"):
        raise RuntimeError("Refusing to migrate a sqlite DATABASE_URL in production. Set DATABASE_URL to Postgres.")

    from alembic import command
    from alembic.config import Config

    cfg = Config(str(ROOT / "alembic.ini"))
    cfg.set_main_option("script_location", str(ROOT / "migrations"))
    cfg.set_main_option("sqlalchemy.url", db_url)
    cfg.attributes["database_url"] = db_url
    command.upgrade(cfg, "head")
    print("Migrations complete.", flush=True)


def seed_roles(s: Session) -> dict[str, Role]:
    """Create missing permissions/roles and grant role permissions."""
    perms: dict[str, Permission] = {}
    for key, name in PERMISSIONS.items():
        p = s.query(Permission).filter(Permission.key == key).one_or_none()
        if not p:
            p = Permission(key=key, name=name)
            s.add(p)
        perms[key] = p

    roles: dict[str, Role] = {}
    for key, (name, grants) in ROLES.items():
        role = s.query(Role).filter(Role.key == key).one_or_none()
        if not role:
            role = Role(key=key, name=name)
            s.add(role)
        for perm_key in grants:
            if perms[perm_key] not in role.permissions:
                role.permissions.append(perms[perm_key])
        roles[key] = role
    return roles


def seed_only(*, database_url: str | None = None) -> None:
    admin_email = (os.environ.get("ADMIN_EMAIL") or "admin@portcall.local").strip().lower()
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me"

    # Direct engine/session so seeding works without building the app.
    with _session_scope(_database_url(database_url)) as s:
        roles = seed_roles(s)

        user = s.query(User).filter(User.email == admin_email).one_or_none()
        if not user:
            user = User(email=admin_email, password_hash=generate_password_hash(admin_password), is_active=True)
            s.add(user)
        if roles[SUPER_ADMIN_ROLE] not in user.roles:
            user.roles.append(roles[SUPER_ADMIN_ROLE])

    print("Initialized database (seed_only).", flush=True)
    print(f"Admin email: {admin_email}", flush=True)
    print("Admin password: (from ADMIN_PASSWORD)", flush=True)


def main() -> None:
    parser = argparse.ArgumentParser(description="Migrate and seed the port-call database.")
    parser.add_argument("--migrate", action="store_true", help="run alembic upgrade head before seeding")
    parser.add_argument("--database-url", default=None)
    args = parser.parse_args()

    if args.migrate:
        run_migrations(database_url=args.database_url)
    seed_only(database_url=args.database_url)


if __name__ == "__main__":
    main()
