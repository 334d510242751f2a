"""
ITSM Change Lifecycle Engine
Scheduler Service.

There is no background thread. Jobs are plain functions registered by name
and run on demand, either by the cron trigger endpoint (called by an
external timer every ``AUTOMATION_INTERVAL_SECONDS``) or by the
``flask run-change-automation`` CLI command. Each run is folded into the
job's ``ScheduledJob`` row.

Usage:
    @register_job("change_lifecycle", interval_config="AUTOMATION_INTERVAL_SECONDS")
    def run_change_lifecycle(app):
        ...

    SchedulerService.run_job("change_lifecycle")
"""

from __future__ import annotations

import logging
import time
from contextlib import nullcontext
from dataclasses import dataclass
from typing import Any, Callable

from flask import Flask, has_app_context
from sqlalchemy.exc import SQLAlchemyError

from itsm.models import db
from itsm.models.scheduling import ScheduledJob

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class JobSpec:
    name: str
    fn: Callable[[Flask], Any]
    interval_config: str | None = None
    default_interval: int = 60

    @property
    def description(self) -> str:
        doc = (self.fn.__doc__ or "").strip()
        return doc.splitlines()[0] if doc else f"Scheduled job: {self.name}"

    def interval_seconds(self, app: Flask) -> int:
        if self.interval_config:
            return int(app.config.get(self.interval_config, self.default_interval))
        return self.default_interval


_job_registry: dict[str, JobSpec] = {}


def register_job(name: str, *, interval_config: str | None = None, default_interval: int = 60):
    """Register ``fn(app)`` as the job called ``name``."""
    def decorator(fn):
        _job_registry[name] = JobSpec(name, fn, interval_config, default_interval)
        return fn
    return decorator


class SchedulerService:
    """Runs registered jobs and keeps their ScheduledJob rows current."""

    _app: Flask | None = None

    @classmethod
    def init_app(cls, app: Flask) -> None:
        cls._app = app
        app.extensions["scheduler"] = cls
        logger.info("SchedulerService initialized with %d registered jobs", len(_job_registry))

    @classmethod
    def _context(cls):
        # Reuse the caller's context (and its session) when there is one
        return nullcontext() if has_app_context() else cls._app.app_context()

    @classmethod
    def ensure_jobs_registered(cls) -> list[ScheduledJob]:
        """Create a ScheduledJob row for every registered job that lacks one."""
        if cls._app is None:
            return []
        created = []
        with cls._context():
            existing = {name for (name,) in db.session.query(ScheduledJob.job_name)}
            for spec in _job_registry.values():
                if spec.name in existing:
                    continue
                job = ScheduledJob(
                    job_name=spec.name,
                    description=spec.description,
                    interval_seconds=spec.interval_seconds(cls._app),
                    is_enabled=True,
                )
                db.session.add(job)
                created.append(job)
            if created:
                db.session.commit()
                logger.info("Created %d scheduled job records", len(created))
        return created

    @classmethod
    def run_job(cls, job_name: str) -> dict:
        """
        Run one job now.

        Returns:
            ``{job_name, status, duration_ms, result, error}`` where status is
            ``success``, ``failed``, ``skipped`` (job paused) or ``error``
            (unknown job / scheduler not initialised).
        """
        spec = _job_registry.get(job_name)
        if spec is None:
            return {"job_name": job_name, "status": "error", "error": f"Unknown job: {job_name}"}
        if cls._app is None:
            return {"job_name": job_name, "status": "error", "error": "Scheduler not initialized"}

        cls.ensure_jobs_registered()
        with cls._context():
            job = ScheduledJob.query.filter_by(job_name=job_name).first()
            if job is not None and not job.is_enabled:
                logger.info("Job %s is paused; skipping run", job_name, extra={"job_name": job_name})
                return {"job_name": job_name, "status": "skipped", "duration_ms": 0,
                        "result": None, "error": None}

            started = time.monotonic()
            result, error, status = None, None, "success"
            try:
                result = spec.fn(cls._app)
            except Exception as exc:
                db.session.rollback()
                status, error = "failed", str(exc)
                logger.exception("Job %s failed", job_name, extra={"job_name": job_name})
            duration_ms = int((time.monotonic() - started) * 1000)

            cls._record_run(job_name, status, duration_ms, result, error)

        logger.info("Job %s finished: %s in %dms", job_name, status, duration_ms,
                    extra={"job_name": job_name, "duration_ms": duration_ms})
        return {
            "job_name": job_name,
            "status": status,
            "duration_ms": duration_ms,
            "result": result,
            "error": error,
        }

    @staticmethod
    def _record_run(job_name, status, duration_ms, result, error) -> None:
        try:
            job = ScheduledJob.query.filter_by(job_name=job_name).first()
            if job is None:
                return
            job.record_run(
                status=status,
                duration_ms=duration_ms,
                result=result if isinstance(result, dict) else None,
                error=error,
            )
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception("Failed to update job record for %s", job_name,
                             extra={"job_name": job_name})

    @classmethod
    def list_jobs(cls) -> list[dict]:
        """Registered jobs with their persisted state (None if never registered)."""
        rows = {job.job_name: job for job in ScheduledJob.query.all()}
        return [
            {
                "job_name": name,
                "registered": True,
                "db_record": rows[name].to_dict() if name in rows else None,
            }
            for name in _job_registry
        ]

    @classmethod
    def toggle_job(cls, job_name: str, enabled: bool) -> dict | None:
        """Pause or resume a job; None if it has no row."""
        job = ScheduledJob.query.filter_by(job_name=job_name).first()
        if job is None:
            return None
        job.is_enabled = enabled
        db.session.commit()
        logger.info("Job %s %s", job_name, "resumed" if enabled else "paused",
                    extra={"job_name": job_name})
        return job.to_dict()
