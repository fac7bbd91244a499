"""
Background work backed by a persisted BackgroundJob row.

The page that starts a job polls its status endpoint; the worker thread writes progress
to the row as it goes. With JOBS_INLINE set (tests, scripts) the work runs synchronously.
"""
from __future__ import annotations

import json
import logging
from collections.abc import Callable
from datetime import datetime
from threading import Thread
from typing import Any

from flask import Flask
from sqlalchemy.orm import Session

from app.clubadmin.models import BackgroundJob, User

logger = logging.getLogger(__name__)

JOB_STATUSES = ("queued", "running", "complete", "failed")

ProgressFn = Callable[[int, str | None], None]
JobFn = Callable[[Session, BackgroundJob, ProgressFn], str | None]


class JobError(RuntimeError):
    """Raised by job bodies; the message is shown to the user as-is."""


def create_job(s: Session, *, kind: str, owner: User | None, params: dict[str, Any] | None = None) -> BackgroundJob:
    job = BackgroundJob(
        kind=kind,
        status="queued",
        progress=0,
        owner_user_id=owner.id if owner else None,
        params_json=json.dumps(params, sort_keys=True) if params else None,
    )
    s.add(job)
    s.flush()
    return job


def job_params(job: BackgroundJob) -> dict[str, Any]:
    if not job.params_json:
        return {}
    return json.loads(job.params_json)


def job_status_payload(job: BackgroundJob) -> dict[str, Any]:
    return {
        "id": job.id,
        "kind": job.kind,
        "status": job.status,
        "progress": job.progress,
        "message": job.message,
        "done": job.status in ("complete", "failed"),
    }


def _run(app: Flask, job_id: int, fn: JobFn, failure_message: str) -> None:
    sm = app.extensions["sqlalchemy_sessionmaker"]
    with app.app_context():
        s: Session = sm()
        try:
            job = s.get(BackgroundJob, job_id)
            if job is None:
                logger.error("Background job %s vanished before it started", job_id)
                return
            job.status = "running"
            job.started_at = datetime.utcnow()
            s.commit()

            def progress(pct: int, message: str | None = None) -> None:
                job.progress = max(0, min(100, int(pct)))
                if message is not None:
                    job.message = message
                s.commit()

            try:
                result_key = fn(s, job, progress)
            except Exception as e:
                s.rollback()
                logger.exception("Background job %s (%s) failed", job_id, job.kind)
                job = s.get(BackgroundJob, job_id)
                job.status = "failed"
                job.message = str(e) if isinstance(e, JobError) else failure_message
                job.finished_at = datetime.utcnow()
                s.commit()
                return

            job.status = "complete"
            job.progress = 100
            job.result_key = result_key
            job.finished_at = datetime.utcnow()
            s.commit()
            logger.info("Background job %s (%s) complete", job_id, job.kind)
        finally:
            s.close()


def start_job(app: Flask, job: BackgroundJob, fn: JobFn, *, failure_message: str = "Job failed") -> None:
    """
    Caller must commit the job row first so the worker's session can see it.
    """
    if app.config.get("JOBS_INLINE"):
        _run(app, job.id, fn, failure_message)
        return
    t = Thread(target=_run, args=(app, job.id, fn, failure_message), daemon=True)
    t.start()
