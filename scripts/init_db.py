import sys
from pathlib import Path
import os

from werkzeug.security import generate_password_hash
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from contextlib import contextmanager

# Ensure repo root is on sys.path when running as a script.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.clubadmin.models import Permission, Role, User
from app.clubadmin.modules.ledgers.service import ensure_basic_accounts

PERMISSIONS = (
    ("admin.view", "Admin: view dashboard"),
    ("users.view", "Members: view"),
    ("users.edit", "Members: edit"),
    ("users.review", "Members: review applications"),
    ("users.export", "Members: export CSV"),
    ("money.view", "Money: view ledgers"),
    ("money.refund", "Money: refund payments"),
    ("money.credit", "Money: add credits"),
    ("posts.view", "Posts: view"),
    ("posts.edit", "Posts: edit"),
    ("posts.publish", "Posts: publish"),
    ("media.view", "Media: view"),
    ("media.upload", "Media: upload"),
    ("media.edit", "Media: edit and delete"),
    ("expenses.submit", "Expense reports: submit"),
    ("bank_accounts.unseal", "Bank accounts: view full numbers"),
)

ROLES = {
    "admin": ("Administrator", [key for key, _name in PERMISSIONS]),
    "treasurer": (
        "Treasurer",
        [
            "admin.view",
            "users.view",
            "users.export",
            "money.view",
            "money.refund",
            "money.credit",
            "expenses.submit",
            "bank_accounts.unseal",
        ],
    ),
    "editor": (
        "Editor",
        [
            "admin.view",
            "posts.view",
            "posts.edit",
            "posts.publish",
            "media.view",
            "media.upload",
            "media.edit",
            "expenses.submit",
        ],
    ),
    "member": ("Member", ["expenses.submit"]),
}


@contextmanager
def _session_scope(database_url: str):
    engine = create_engine(database_url, future=True)
    sm = sessionmaker(bind=engine, class_=Session, autoflush=False, autocommit=False, expire_on_commit=False, future=True)
    s: Session = sm()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()


def seed_roles(s: Session) -> dict[str, Role]:
    """Permissions and roles, idempotent. Existing roles only gain permissions."""
    perms: dict[str, Permission] = {}
    for key, name in PERMISSIONS:
        p = s.query(Permission).filter(Permission.key == key).one_or_none()
        if not p:
            p = Permission(key=key, name=name)
            s.add(p)
        perms[key] = p

    roles: dict[str, Role] = {}
    for key, (name, perm_keys) in ROLES.items():
        role = s.query(Role).filter(Role.key == key).one_or_none()
        if not role:
            role = Role(key=key, name=name)
            s.add(role)
        for pk in perm_keys:
            if perms[pk] not in role.permissions:
                role.permissions.append(perms[pk])
        roles[key] = role
    return roles


def seed_only(*, database_url: str | None = None) -> None:
    """
    Seed permissions/roles/admin user/ledger accounts in an idempotent way.
    Does NOT overwrite an existing admin user's password.
    """
    admin_email = (os.environ.get("ADMIN_EMAIL") or "admin@example.org").strip().lower()
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me"

    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///clubadmin.db").strip()

    # Direct engine/session so this can run in release without building the Flask app.
    with _session_scope(db_url) as s:
        roles = seed_roles(s)
        ensure_basic_accounts(s)

        user = s.query(User).filter(User.email == admin_email).one_or_none()
        if not user:
            user = User(
                email=admin_email,
                password_hash=generate_password_hash(admin_password),
                is_active=True,
                state="active",
                role="admin",
            )
            s.add(user)
        if roles["admin"] not in user.roles:
            user.roles.append(roles["admin"])

    print("Initialized database (seed_only).")
    print(f"Admin email: {admin_email}")
    print("Admin password: (from ADMIN_PASSWORD)")


def main() -> None:
    seed_only(database_url=None)


if __name__ == "__main__":
    main()
