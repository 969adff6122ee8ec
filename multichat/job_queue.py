# multichat/job_queue.py
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from multichat.entities import (
    JOB_FAILED,
    JOB_PENDING,
    JOB_RUNNING,
    JOB_SUCCEEDED,
    QueueJob,
    utcnow,
)

logger = logging.getLogger("multichat_backend")

OPEN_STATES = (JOB_PENDING, JOB_RUNNING)


def job_to_dict(job: QueueJob) -> Dict[str, Any]:
    return {
        "id": job.id,
        "job_id": job.job_id,
        "kind": job.kind,
        "conversation_id": job.conversation_id,
        "requesting_user_id": job.requesting_user_id,
        "payload": dict(job.payload or {}),
        "state": job.state,
        "status": job.status,
        "attempts": job.attempts,
        "max_attempts": job.max_attempts,
        "last_error": job.last_error,
        "runner_id": job.runner_id,
    }


class JobQueue:
    """
    Durable job queue with per-conversation serialization.

    The head of a conversation is its lowest-id job that is still PENDING or
    RUNNING. Only a PENDING head is claimable, so at most one job per
    conversation runs at any time and jobs run in enqueue order, across any
    number of workers. A job waiting for its retry stays the head and holds
    back the ones behind it.
    """

    def __init__(self, session_factory: Callable[[], Session], backoff_seconds: float = 2.0):
        self.SessionFactory = session_factory
        self.backoff_seconds = backoff_seconds

    def enqueue(
        self,
        session: Session,
        kind: str,
        conversation_id: str,
        *,
        requesting_user_id: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
        max_attempts: int = 1,
        available_at: Optional[datetime] = None,
    ) -> QueueJob:
        """Adds the job to the caller's transaction."""
        now = utcnow()
        job = QueueJob(
            kind=kind,
            conversation_id=str(conversation_id),
            requesting_user_id=requesting_user_id,
            payload=dict(payload or {}),
            state=JOB_PENDING,
            status="queued",
            attempts=0,
            max_attempts=max(1, int(max_attempts)),
            available_at=available_at or now,
            created_at=now,
            updated_at=now,
        )
        session.add(job)
        session.flush()
        return job

    def claim_next(
        self,
        runner_id: str,
        *,
        limit: int = 1,
        exclude_conversations: Iterable[str] = (),
    ) -> List[Dict[str, Any]]:
        if limit <= 0:
            return []
        now = utcnow()
        excluded = [str(c) for c in exclude_conversations]

        session = self.SessionFactory()
        try:
            heads = (
                select(func.min(QueueJob.id))
                .where(QueueJob.state.in_(OPEN_STATES))
                .group_by(QueueJob.conversation_id)
            )
            stmt = (
                select(QueueJob)
                .where(
                    QueueJob.id.in_(heads),
                    QueueJob.state == JOB_PENDING,
                    QueueJob.available_at <= now,
                )
                .order_by(QueueJob.id.asc())
                .limit(limit)
                .with_for_update(skip_locked=True, of=QueueJob)
            )
            if excluded:
                stmt = stmt.where(QueueJob.conversation_id.notin_(excluded))
            candidates = session.execute(stmt).scalars().all()

            claimed: List[Dict[str, Any]] = []
            for job in candidates:
                result = session.execute(
                    update(QueueJob)
                    .where(QueueJob.id == job.id, QueueJob.state == JOB_PENDING)
                    .values(
                        state=JOB_RUNNING,
                        status="running",
                        attempts=QueueJob.attempts + 1,
                        runner_id=runner_id,
                        started_at=now,
                        heartbeat_at=now,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    session.refresh(job)
                    claimed.append(job_to_dict(job))
            session.commit()
            return claimed
        finally:
            session.close()

    def mark_succeeded(self, session: Session, job_id: str, status: str = "done") -> bool:
        """Inside the caller's transaction, so the job closes with the work it produced."""
        now = utcnow()
        result = session.execute(
            update(QueueJob)
            .where(QueueJob.job_id == str(job_id), QueueJob.state == JOB_RUNNING)
            .values(state=JOB_SUCCEEDED, status=status, finished_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def retry_later(self, job_id: str, error: str) -> Optional[datetime]:
        """Back to PENDING after base * 2**(attempts-1) seconds. Returns the new available_at."""
        session = self.SessionFactory()
        try:
            job = session.execute(select(QueueJob).where(QueueJob.job_id == str(job_id))).scalar_one_or_none()
            if job is None or job.state != JOB_RUNNING:
                return None
            delay = self.backoff_seconds * (2 ** max(0, job.attempts - 1))
            now = utcnow()
            job.state = JOB_PENDING
            job.status = f"retrying (attempt {job.attempts}/{job.max_attempts})"
            job.available_at = now + timedelta(seconds=delay)
            job.last_error = str(error)[:4000]
            job.runner_id = None
            job.updated_at = now
            session.commit()
            logger.warning("Job %s (conversation %s) retry in %.1fs: %s", job_id, job.conversation_id, delay, error)
            return job.available_at
        finally:
            session.close()

    def mark_failed(self, job_id: str, error: str, status: str = "failed") -> bool:
        session = self.SessionFactory()
        try:
            now = utcnow()
            result = session.execute(
                update(QueueJob)
                .where(QueueJob.job_id == str(job_id), QueueJob.state.in_(OPEN_STATES))
                .values(
                    state=JOB_FAILED,
                    status=status,
                    last_error=str(error)[:4000],
                    finished_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            session.commit()
            return result.rowcount == 1
        finally:
            session.close()

    def touch(self, job_ids: Iterable[str]) -> int:
        ids = [str(j) for j in job_ids]
        if not ids:
            return 0
        session = self.SessionFactory()
        try:
            result = session.execute(
                update(QueueJob)
                .where(QueueJob.job_id.in_(ids), QueueJob.state == JOB_RUNNING)
                .values(heartbeat_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            session.commit()
            return result.rowcount or 0
        finally:
            session.close()

    def has_pending(self, conversation_id: str, kind: str, session: Optional[Session] = None) -> bool:
        own = session is None
        session = session or self.SessionFactory()
        try:
            found = session.execute(
                select(QueueJob.id)
                .where(
                    QueueJob.conversation_id == str(conversation_id),
                    QueueJob.kind == kind,
                    QueueJob.state.in_(OPEN_STATES),
                )
                .limit(1)
            ).first()
            return found is not None
        finally:
            if own:
                session.close()

    def requeue_stale(
        self,
        older_than_seconds: float,
        on_exhausted: Optional[Callable[[Dict[str, Any], str], None]] = None,
    ) -> int:
        """
        RUNNING jobs whose worker stopped heartbeating go back to PENDING.
        A stale job that already used its last attempt is failed instead and
        on_exhausted(job, reason) runs once for it.
        Returns how many jobs were requeued.
        """
        cutoff = utcnow() - timedelta(seconds=older_than_seconds)
        session = self.SessionFactory()
        try:
            stale = session.execute(
                select(QueueJob).where(QueueJob.state == JOB_RUNNING, QueueJob.heartbeat_at < cutoff)
            ).scalars().all()
            exhausted = [job_to_dict(j) for j in stale if j.attempts >= j.max_attempts]
            retry_ids = [j.job_id for j in stale if j.attempts < j.max_attempts]

            requeued = 0
            if retry_ids:
                result = session.execute(
                    update(QueueJob)
                    .where(
                        QueueJob.job_id.in_(retry_ids),
                        QueueJob.state == JOB_RUNNING,
                        QueueJob.heartbeat_at < cutoff,
                    )
                    .values(state=JOB_PENDING, status="requeued (stale)", runner_id=None, updated_at=utcnow())
                    .execution_options(synchronize_session=False)
                )
                requeued = result.rowcount or 0
            session.commit()
        finally:
            session.close()

        if requeued:
            logger.warning("Requeued %d stale running job(s)", requeued)

        for job in exhausted:
            reason = f"worker stopped heartbeating on attempt {job['attempts']} of {job['max_attempts']}"
            if not self.mark_failed(job["job_id"], reason, status="job_abandoned"):
                continue
            logger.error("Job %s (conversation %s) abandoned: %s", job["job_id"], job["conversation_id"], reason)
            if on_exhausted is not None:
                on_exhausted(job, reason)
        return requeued

    def get_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        session = self.SessionFactory()
        try:
            job = session.execute(select(QueueJob).where(QueueJob.job_id == str(job_id))).scalar_one_or_none()
            return job_to_dict(job) if job is not None else None
        finally:
            session.close()
