import pytest
from cryptography.fernet import Fernet
from sqlalchemy import create_engine
from werkzeug.security import check_password_hash

from app.clubadmin.models import Base, Permission, Role, User
from app.clubadmin.modules.ledgers.models import LedgerAccount
from scripts import init_db
from scripts.release import check_production_env


def test_seed_only_is_idempotent(tmp_path, monkeypatch):
    db_url = f"sqlite:///{tmp_path/'seed.db'}"
    Base.metadata.create_all(bind=create_engine(db_url))
    monkeypatch.setenv("ADMIN_EMAIL", "Boss@Example.org")
    monkeypatch.setenv("ADMIN_PASSWORD", "first-password")

    init_db.seed_only(database_url=db_url)
    monkeypatch.setenv("ADMIN_PASSWORD", "second-password")
    init_db.seed_only(database_url=db_url)

    with init_db._session_scope(db_url) as s:
        assert s.query(Permission).count() == len(init_db.PERMISSIONS)
        assert s.query(Role).count() == len(init_db.ROLES)
        admin = s.query(User).filter(User.email == "boss@example.org").one()
        assert check_password_hash(admin.password_hash, "first-password")
        assert [r.key for r in admin.roles] == ["admin"]
        treasurer = s.query(Role).filter(Role.key == "treasurer").one()
        assert "bank_accounts.unseal" in {p.key for p in treasurer.permissions}
        assert s.query(LedgerAccount).filter(LedgerAccount.name == "membership_revenue").count() == 1


def test_production_release_guardrails(monkeypatch):
    with pytest.raises(RuntimeError):
        check_production_env("production", "sqlite:///club.db")

    monkeypatch.setenv("BANK_ACCOUNT_KEY", "not-a-key")
    with pytest.raises(RuntimeError):
        check_production_env("production", "postgresql://db/club")

    monkeypatch.setenv("BANK_ACCOUNT_KEY", Fernet.generate_key().decode())
    check_production_env("production", "postgresql://db/club")
    check_production_env("development", "sqlite:///club.db")
