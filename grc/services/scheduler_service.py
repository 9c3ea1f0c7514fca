"""
GRC Core Platform
Scheduler Service.

Jobs are plain functions registered with ``@register_job(name,
every_minutes=...)``. Nothing runs in-process: an external cron calls
``flask run-due-jobs`` every few minutes (or ``flask run-job <name>`` for
one job), and operators can trigger or pause jobs through
/api/scheduler. Each run is recorded on the job's ScheduledJob row.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable

from flask import Flask
from sqlalchemy import select

from grc.core.exceptions import NotFoundError
from grc.models import db
from grc.models.scheduling import ScheduledJob
from grc.utils.helpers import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class JobSpec:
    name: str
    func: Callable[[], dict[str, Any]]
    every_minutes: int
    description: str


_registry: dict[str, JobSpec] = {}


def register_job(name: str, *, every_minutes: int):
    """Register ``fn`` as job ``name``; the first docstring line becomes its description."""
    def decorator(fn):
        summary = (fn.__doc__ or name).strip().splitlines()[0]
        _registry[name] = JobSpec(name, fn, every_minutes, summary)
        return fn
    return decorator


def get_registered_jobs() -> dict[str, JobSpec]:
    return dict(_registry)


def _spec(job_name: str) -> JobSpec:
    spec = _registry.get(job_name)
    if spec is None:
        raise NotFoundError(resource="ScheduledJob", resource_id=job_name)
    return spec


def _row(job_name: str) -> ScheduledJob | None:
    return db.session.execute(
        select(ScheduledJob).where(ScheduledJob.job_name == job_name)
    ).scalar_one_or_none()


class SchedulerService:
    """Job bookkeeping and execution inside the current app context."""

    @staticmethod
    def init_app(app: Flask) -> None:
        app.extensions["grc_scheduler"] = SchedulerService
        logger.info("Scheduler ready: %s", ", ".join(sorted(_registry)) or "no jobs")

    @staticmethod
    def ensure_jobs_registered() -> list[ScheduledJob]:
        """Create a ScheduledJob row for every registered job that lacks one."""
        existing = set(db.session.execute(select(ScheduledJob.job_name)).scalars())
        created = [
            ScheduledJob(
                job_name=spec.name,
                description=spec.description,
                interval_minutes=spec.every_minutes,
                is_enabled=True,
            )
            for spec in _registry.values()
            if spec.name not in existing
        ]
        if created:
            db.session.add_all(created)
            db.session.commit()
            logger.info("Registered %d scheduled job(s)", len(created))
        return created

    @staticmethod
    def run_job(job_name: str) -> dict:
        """Run one job now, even if it is not due. Disabled jobs are skipped.

        A failing job is rolled back, logged and recorded as ``failed``; the
        failure is reported in the returned dict rather than raised.

        Raises:
            NotFoundError: no job registered under ``job_name``.
        """
        spec = _spec(job_name)
        SchedulerService.ensure_jobs_registered()
        row = _row(job_name)
        if not row.is_enabled:
            logger.info("Job skipped (disabled)", extra={"job_name": job_name})
            return {"jobName": job_name, "status": "skipped", "durationMs": 0,
                    "result": None, "error": None}

        started_at = utcnow()
        clock = time.monotonic()
        result, error, status = None, None, "success"
        try:
            result = spec.func()
        except Exception as exc:
            db.session.rollback()
            status, error = "failed", str(exc)
            logger.exception("Job failed", extra={"job_name": job_name})
        duration_ms = int((time.monotonic() - clock) * 1000)

        row = _row(job_name)
        row.record_run(started_at=started_at, status=status, duration_ms=duration_ms,
                       result=result, error=error)
        db.session.commit()
        logger.info("Job finished: %s", status,
                    extra={"job_name": job_name, "duration_ms": duration_ms})
        return {"jobName": job_name, "status": status, "durationMs": duration_ms,
                "result": result, "error": error}

    @staticmethod
    def run_due_jobs(now=None) -> list[dict]:
        """Run every enabled job whose interval has elapsed."""
        now = now or utcnow()
        SchedulerService.ensure_jobs_registered()
        due = [
            row.job_name
            for row in db.session.execute(
                select(ScheduledJob).order_by(ScheduledJob.job_name)
            ).scalars()
            if row.job_name in _registry and row.is_due(now)
        ]
        return [SchedulerService.run_job(name) for name in due]

    @staticmethod
    def list_jobs() -> list[dict]:
        SchedulerService.ensure_jobs_registered()
        rows = db.session.execute(
            select(ScheduledJob)
            .where(ScheduledJob.job_name.in_(list(_registry)))
            .order_by(ScheduledJob.job_name)
        ).scalars().all()
        return [row.to_dict() for row in rows]

    @staticmethod
    def toggle_job(job_name: str, enabled: bool) -> dict:
        _spec(job_name)
        SchedulerService.ensure_jobs_registered()
        row = _row(job_name)
        row.is_enabled = enabled
        db.session.commit()
        logger.info("Job %s", "enabled" if enabled else "disabled", extra={"job_name": job_name})
        return row.to_dict()
