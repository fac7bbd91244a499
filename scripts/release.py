"""
Release phase: migrate the database to head, then seed (idempotent).

Refuses to run a production release against SQLite or without a usable
BANK_ACCOUNT_KEY. Existing passwords are never overwritten by the seed.

Usage:
  python scripts/release.py [--migrate-only | --seed-only]
"""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _require_env(name: str) -> str:
    v = (os.environ.get(name) or "").strip()
    if not v:
        raise RuntimeError(f"Missing required environment variable {name}.")
    return v


def check_production_env(env: str, db_url: str) -> None:
    if env not in ("prod", "production"):
        return
    if db_url.startswith("sqlite"):
        raise RuntimeError("Refusing to run release on sqlite DATABASE_URL in production. Set DATABASE_URL to Postgres.")
    from cryptography.fernet import Fernet

    try:
        Fernet(_require_env("BANK_ACCOUNT_KEY").encode("ascii"))
    except ValueError as e:
        raise RuntimeError("BANK_ACCOUNT_KEY is not a valid Fernet key.") from e


def migrate(db_url: str) -> None:
    from alembic import command
    from alembic.config import Config

    cfg = Config(str(ROOT / "alembic.ini"))
    cfg.set_main_option("script_location", str(ROOT / "migrations"))
    cfg.set_main_option("sqlalchemy.url", db_url)
    command.upgrade(cfg, "head")
    command.current(cfg)


def run_release(*, do_migrate: bool = True, do_seed: bool = True) -> None:
    db_url = _require_env("DATABASE_URL")
    env = (os.environ.get("ENV") or "").strip().lower()
    check_production_env(env, db_url)

    print(f"=== clubadmin release (ENV={env or 'unset'}) ===", flush=True)
    if do_migrate:
        print("Running Alembic migrations...", flush=True)
        migrate(db_url)
        print("Migrations complete.", flush=True)
    if do_seed:
        print("Seeding permissions, roles, admin user and ledger accounts...", flush=True)
        from scripts import init_db

        init_db.seed_only(database_url=db_url)
        print("Seed complete.", flush=True)


def main() -> None:
    ap = argparse.ArgumentParser(description="Migrate and seed the club admin database.")
    group = ap.add_mutually_exclusive_group()
    group.add_argument("--migrate-only", action="store_true")
    group.add_argument("--seed-only", action="store_true")
    args = ap.parse_args()
    run_release(do_migrate=not args.seed_only, do_seed=not args.migrate_only)


if __name__ == "__main__":
    main()
