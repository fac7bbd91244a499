#!/usr/bin/env python3
"""
Production entrypoint: release phase (migrations + seed), then gunicorn.

Usage:
    python scripts/start.py [--skip-release] [--workers N]

PORT, WEB_CONCURRENCY and GUNICORN_TIMEOUT are read from the environment.
"""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

DEFAULT_PORT = 8080


def _resolve_port(raw: str | None) -> int:
    raw = (raw or "").strip()
    if not raw:
        print(f"WARNING: PORT not set, using default {DEFAULT_PORT}", flush=True)
        return DEFAULT_PORT
    port = int(raw)
    if port < 1 or port > 65535:
        raise ValueError("Port out of range")
    return port


def _int_env(name: str, default: int) -> int:
    raw = (os.environ.get(name) or "").strip()
    return int(raw) if raw.isdigit() else default


def gunicorn_argv(port: int, workers: int, timeout: int) -> list[str]:
    return [
        "gunicorn",
        "app.wsgi:app",
        "--bind", f"0.0.0.0:{port}",
        "--workers", str(workers),
        "--timeout", str(timeout),
        # fork after create_app(); the engine is disposed in each child
        "--preload",
        "--access-logfile", "-",
        "--error-logfile", "-",
    ]


def main() -> None:
    ap = argparse.ArgumentParser(description="Run the release phase and start gunicorn.")
    ap.add_argument("--skip-release", action="store_true", help="Start gunicorn without migrating/seeding")
    ap.add_argument("--workers", type=int, default=_int_env("WEB_CONCURRENCY", 2))
    args = ap.parse_args()

    try:
        port = _resolve_port(os.environ.get("PORT"))
    except ValueError:
        print(f"ERROR: Invalid PORT value '{os.environ.get('PORT')}'. Must be integer 1-65535.", flush=True)
        sys.exit(1)

    if not args.skip_release:
        from scripts.release import run_release

        try:
            run_release()
        except Exception as e:
            print(f"Release failed: {e}", flush=True)
            sys.exit(1)

    argv = gunicorn_argv(port, max(1, args.workers), _int_env("GUNICORN_TIMEOUT", 120))
    print(f"Starting gunicorn on 0.0.0.0:{port} ({args.workers} workers)", flush=True)
    os.execvp("gunicorn", argv)


if __name__ == "__main__":
    main()
