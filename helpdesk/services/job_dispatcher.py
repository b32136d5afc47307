"""Durable outbox for deferred conversation jobs.

The pipeline never runs follow-up work itself. Each event it raises
(resolution checks, auto-responses, embeddings, email sends, file previews,
human-support notifications) is written as a ScheduledJob row; an external
dispatcher polls pending rows whose run_at has passed and marks them
dispatched.

Rows are written in the caller's transaction, so a rolled-back state change
never leaves an orphaned job behind.
"""

import logging
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.orm import Session

from helpdesk.db.models import ScheduledJob, ScheduledJobStatus, utc_now

logger = logging.getLogger(__name__)

CHECK_RESOLUTION = "conversations/check-resolution"
AUTO_RESPONSE_CREATE = "conversations/auto-response.create"
EMBEDDING_CREATE = "conversations/embedding.create"
MESSAGE_CREATED = "conversations/message.created"
EMAIL_ENQUEUED = "conversations/email.enqueued"
FILE_PREVIEW_GENERATE = "files/preview.generate"
HUMAN_SUPPORT_REQUESTED = "conversations/human-support-requested"

# Staff replies can be undone for this long before the email job runs
EMAIL_UNDO_COUNTDOWN_SECONDS = 15


def trigger_event(
    db: Session,
    name: str,
    data: dict[str, Any],
    sleep_seconds: int | None = None,
    commit: bool = False,
) -> ScheduledJob:
    """Add a job to the durable outbox.

    Args:
        db: Database session for persistence.
        name: Event name, e.g. 'conversations/check-resolution'.
        data: JSON-serializable payload.
        sleep_seconds: Optional delay before the job may run.
        commit: Commit immediately instead of joining the caller's transaction.

    Returns:
        The created ScheduledJob ORM instance.
    """
    run_at = utc_now()
    if sleep_seconds:
        run_at = run_at + timedelta(seconds=sleep_seconds)

    job = ScheduledJob(
        name=name,
        payload=data,
        run_at=run_at,
        status=ScheduledJobStatus.pending.value,
    )
    db.add(job)
    if commit:
        db.commit()
    else:
        db.flush()
    logger.info("job_enqueued name=%s run_at=%s payload=%s", name, run_at.isoformat(), data)
    return job


def get_pending_jobs(
    db: Session,
    name: str | None = None,
    due_before: datetime | None = None,
) -> list[ScheduledJob]:
    """Query pending jobs, oldest first.

    Args:
        db: Database session.
        name: Optional filter on event name.
        due_before: Only return jobs whose run_at is at or before this time.

    Returns:
        List of ScheduledJob instances with status='pending'.
    """
    query = db.query(ScheduledJob).filter(
        ScheduledJob.status == ScheduledJobStatus.pending.value
    )
    if name is not None:
        query = query.filter(ScheduledJob.name == name)
    if due_before is not None:
        query = query.filter(ScheduledJob.run_at <= due_before)
    return query.order_by(ScheduledJob.run_at, ScheduledJob.id).all()


def mark_jobs_dispatched(db: Session, job_ids: list[int]) -> int:
    """Mark jobs as handed over to the dispatcher.

    Args:
        db: Database session.
        job_ids: ScheduledJob primary keys.

    Returns:
        Number of jobs marked dispatched.
    """
    if not job_ids:
        return 0
    count = (
        db.query(ScheduledJob)
        .filter(
            ScheduledJob.id.in_(job_ids),
            ScheduledJob.status == ScheduledJobStatus.pending.value,
        )
        .update({"status": ScheduledJobStatus.dispatched.value}, synchronize_session=False)
    )
    db.commit()
    return count
