"""Durable job queue backed by the ``job`` table.

The table is the source of truth. RQ only carries wake-up tasks so that an
RQ worker can pick up work without polling; losing a wake-up never loses a
job because poll workers claim from the table directly.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
import os
from typing import Any
from uuid import UUID

from redis import Redis
from rq import Queue
from sqlalchemy import and_, desc, func, or_, select, update

from core.logger import get_logger
from db.models import JOB_TYPES, Job
from db.repository import find_one_in_transaction, insert_with_tenant, tenant_clause, transaction
from db.session import engine

logger = get_logger(__name__)

FINAL_STATUSES = ("completed", "failed", "cancelled")


class JobStateError(ValueError):
    pass


class JobNotFoundError(LookupError):
    pass


@dataclass(frozen=True)
class ClaimedJob:
    id: int
    account_id: UUID
    job_type: str
    payload: dict[str, Any]
    retry_count: int
    max_retries: int
    worker_id: str


def _redis_url() -> str:
    return os.getenv("REDIS_URL", "redis://localhost:6379/0")


def _timeout_seconds() -> int:
    return int(os.getenv("JOB_TIMEOUT_SECONDS", "1800"))


def _backend() -> str:
    return os.getenv("JOB_QUEUE_BACKEND", "rq").strip().lower()


def get_redis() -> Redis:
    return Redis.from_url(_redis_url())


def get_queue(name: str = "default") -> Queue:
    return Queue(name, connection=get_redis())


def _now() -> datetime:
    return datetime.now(UTC)


def job_row(job: Job) -> dict[str, Any]:
    duration_s = None
    if job.started_at and job.completed_at:
        duration_s = round((job.completed_at - job.started_at).total_seconds(), 3)
    return {
        "id": job.id,
        "account_id": str(job.account_id),
        "type": job.job_type,
        "status": job.status,
        "priority": job.priority,
        "payload": job.payload or {},
        "results": job.results,
        "error": job.error,
        "progress_pct": job.progress_pct,
        "progress_text": job.progress_text,
        "worker_id": job.worker_id,
        "retry_count": job.retry_count,
        "max_retries": job.max_retries,
        "created_by": job.created_by,
        "created_at": job.created_at,
        "started_at": job.started_at,
        "completed_at": job.completed_at,
        "duration_s": duration_s,
    }


def _notify_workers(job_id: int) -> None:
    if _backend() != "rq":
        return
    try:
        get_queue().enqueue(
            "pipeline.jobs.run_next_job",
            job_timeout=_timeout_seconds() + 60,
            description=f"wake-up for job {job_id}",
        )
    except Exception as exc:
        logger.warning("queue_wakeup_failed", job_id=job_id, error=str(exc))


def enqueue(
    job_type: str,
    payload: dict[str, Any] | None,
    account_id: UUID,
    *,
    priority: int = 0,
    created_by: str | None = None,
    max_retries: int = 3,
) -> int:
    if job_type not in JOB_TYPES:
        raise JobStateError(f"unknown job type: {job_type}")
    if payload is not None and not isinstance(payload, dict):
        raise JobStateError("payload must be an object")
    job = insert_with_tenant(
        Job,
        account_id,
        {
            "job_type": job_type,
            "status": "queued",
            "priority": int(priority),
            "payload": payload or {},
            "retry_count": 0,
            "max_retries": max_retries,
            "created_by": created_by,
        },
    )
    logger.info("job_enqueued", job_id=job.id, job_type=job_type, priority=priority)
    _notify_workers(job.id)
    return job.id


def claim_next(worker_id: str) -> ClaimedJob | None:
    """Atomically move the best queued job to ``processing``."""
    candidate = (
        select(Job.id)
        .where(Job.status == "queued")
        .order_by(desc(Job.priority), Job.created_at.asc(), Job.id.asc())
        .limit(1)
    )
    if engine.dialect.name == "postgresql":
        candidate = candidate.with_for_update(skip_locked=True)
    now = _now()
    stmt = (
        update(Job)
        .where(Job.id == candidate.scalar_subquery(), Job.status == "queued")
        .values(
            status="processing",
            worker_id=worker_id,
            started_at=now,
            heartbeat_at=now,
            completed_at=None,
            progress_pct=0,
            progress_text="Claimed",
            updated_at=now,
        )
        .returning(Job.id, Job.account_id, Job.job_type, Job.payload, Job.retry_count, Job.max_retries)
        .execution_options(synchronize_session=False)
    )
    with transaction() as session:
        row = session.execute(stmt).first()
    if row is None:
        return None
    claimed = ClaimedJob(
        id=row[0],
        account_id=row[1],
        job_type=row[2],
        payload=row[3] or {},
        retry_count=row[4],
        max_retries=row[5],
        worker_id=worker_id,
    )
    logger.info("job_claimed", job_id=claimed.id, job_type=claimed.job_type, worker_id=worker_id)
    return claimed


def get_job(job_id: int, account_id: UUID) -> dict[str, Any]:
    with transaction() as session:
        job = find_one_in_transaction(session, Job, account_id, id=job_id)
        if job is None:
            raise JobNotFoundError(f"Job not found: {job_id}")
        return job_row(job)


def list_jobs(
    account_id: UUID,
    *,
    status: str | None = None,
    job_type: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[dict[str, Any]]:
    with transaction() as session:
        stmt = select(Job).where(tenant_clause(Job, account_id))
        if status:
            stmt = stmt.where(Job.status == status)
        if job_type:
            stmt = stmt.where(Job.job_type == job_type)
        stmt = stmt.order_by(desc(Job.created_at), desc(Job.id)).limit(limit).offset(offset)
        return [job_row(job) for job in session.execute(stmt).scalars().all()]


def cancel(job_id: int, account_id: UUID) -> dict[str, Any]:
    """Advisory cancel. Completed, failed and cancelled jobs are left untouched."""
    now = _now()
    with transaction() as session:
        job = find_one_in_transaction(session, Job, account_id, id=job_id)
        if job is None:
            raise JobNotFoundError(f"Job not found: {job_id}")
        result = session.execute(
            update(Job)
            .where(Job.id == job_id, Job.status.in_(("queued", "processing")))
            .values(status="cancelled", progress_text="Cancellation requested", updated_at=now)
        )
        session.refresh(job)
        changed = result.rowcount > 0
        if changed and job.started_at is None:
            job.completed_at = now
        row = job_row(job)
    if changed:
        logger.info("job_cancel_requested", job_id=job_id)
    return {**row, "cancelled": changed}


def retry(job_id: int, account_id: UUID) -> dict[str, Any]:
    with transaction() as session:
        job = find_one_in_transaction(session, Job, account_id, id=job_id)
        if job is None:
            raise JobNotFoundError(f"Job not found: {job_id}")
        if job.status != "failed":
            raise JobStateError(f"Only failed jobs can be retried (status={job.status})")
        if job.retry_count >= job.max_retries:
            raise JobStateError(f"Retry limit reached ({job.retry_count}/{job.max_retries})")
        job.retry_count += 1
        job.status = "queued"
        job.error = None
        job.results = None
        job.worker_id = None
        job.started_at = None
        job.completed_at = None
        job.heartbeat_at = None
        job.progress_pct = 0
        job.progress_text = f"Retry {job.retry_count}/{job.max_retries} queued"
        session.flush()
        row = job_row(job)
    logger.info("job_retry_queued", job_id=job_id, retry_count=row["retry_count"])
    _notify_workers(job_id)
    return row


def update_progress(job_id: int, pct: int, text: str | None = None) -> None:
    pct = max(0, min(100, int(pct)))
    now = _now()
    with transaction() as session:
        session.execute(
            update(Job)
            .where(Job.id == job_id, Job.status == "processing")
            .values(progress_pct=pct, progress_text=text, heartbeat_at=now, updated_at=now)
        )


def checkpoint_status(job_id: int) -> str | None:
    """Return the current status and refresh the heartbeat if still processing."""
    now = _now()
    with transaction() as session:
        session.execute(
            update(Job)
            .where(Job.id == job_id, Job.status == "processing")
            .values(heartbeat_at=now)
        )
        return session.execute(select(Job.status).where(Job.id == job_id)).scalar_one_or_none()


def _finish(job_id: int, from_status: str, values: dict[str, Any]) -> bool:
    now = _now()
    with transaction() as session:
        result = session.execute(
            update(Job)
            .where(Job.id == job_id, Job.status == from_status)
            .values(completed_at=now, updated_at=now, **values)
        )
        return result.rowcount > 0


def complete(job_id: int, results: dict[str, Any]) -> bool:
    done = _finish(
        job_id,
        "processing",
        {"status": "completed", "results": results, "progress_pct": 100, "progress_text": "Completed"},
    )
    if not done:
        logger.warning("job_complete_skipped", job_id=job_id)
    return done


def fail(job_id: int, error: str, results: dict[str, Any] | None = None) -> bool:
    values: dict[str, Any] = {"status": "failed", "error": error[:2000], "progress_text": "Failed"}
    if results is not None:
        values["results"] = results
    return _finish(job_id, "processing", values)


def mark_cancelled(job_id: int, results: dict[str, Any] | None = None) -> bool:
    values: dict[str, Any] = {"progress_text": "Cancelled"}
    if results is not None:
        values["results"] = results
    if _finish(job_id, "cancelled", values):
        return True
    return _finish(job_id, "processing", {"status": "cancelled", **values})


def recover_stale_jobs(stale_after_s: int | None = None) -> dict[str, int]:
    """Requeue or fail ``processing`` rows whose worker stopped heartbeating."""
    stale_after_s = stale_after_s or int(os.getenv("JOB_STALE_AFTER_SECONDS", "600"))
    cutoff = _now() - timedelta(seconds=stale_after_s)
    requeued = failed = 0
    with transaction() as session:
        stmt = select(Job).where(
            and_(
                Job.status == "processing",
                or_(Job.heartbeat_at < cutoff, and_(Job.heartbeat_at.is_(None), Job.started_at < cutoff)),
            )
        ).with_for_update()
        for job in session.execute(stmt).scalars().all():
            if job.retry_count < job.max_retries:
                job.retry_count += 1
                job.status = "queued"
                job.worker_id = None
                job.started_at = None
                job.heartbeat_at = None
                job.progress_pct = 0
                job.progress_text = "Requeued after lost worker heartbeat"
                requeued += 1
            else:
                job.status = "failed"
                job.error = "stale: worker heartbeat lost"
                job.completed_at = _now()
                failed += 1
    if requeued or failed:
        logger.warning("stale_jobs_recovered", requeued=requeued, failed=failed)
    return {"requeued": requeued, "failed": failed}


def queue_stats(account_id: UUID, hours: int = 24) -> dict[str, Any]:
    since = _now() - timedelta(hours=hours)
    with transaction() as session:
        rows = session.execute(
            select(Job.status, Job.job_type, func.count())
            .where(tenant_clause(Job, account_id), Job.created_at >= since)
            .group_by(Job.status, Job.job_type)
        ).all()
        pending = session.execute(
            select(func.count()).select_from(Job).where(tenant_clause(Job, account_id), Job.status == "queued")
        ).scalar_one()
    by_status: dict[str, int] = {}
    by_type: dict[str, dict[str, int]] = {}
    for status, job_type, count in rows:
        by_status[status] = by_status.get(status, 0) + int(count)
        by_type.setdefault(job_type, {})[status] = int(count)
    return {
        "window_hours": hours,
        "total": sum(by_status.values()),
        "by_status": by_status,
        "by_type": by_type,
        "queued_now": int(pending),
    }
