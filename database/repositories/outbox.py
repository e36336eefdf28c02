import logging
from typing import Any, Dict, Iterable, List, Optional
from datetime import datetime, timezone, timedelta

from sqlalchemy import select, update, func, and_

from database.models import NotificationOutbox, OutboxStatus, coerce_uuid
from database.repositories.base import BaseRepository

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 5
DEFAULT_LEASE_SECONDS = 300
LEASE_EXPIRED_ERROR = "lease expired"


def normalize_channels(channels: Iterable[str]) -> List[str]:
    """Ordered set of channel identifiers: first occurrence wins."""
    seen = []
    for channel in channels or []:
        channel = str(channel).strip().lower()
        if channel and channel not in seen:
            seen.append(channel)
    return seen


class OutboxRepository(BaseRepository):
    """
    Durable queue of delivery jobs.

    Nothing here commits; callers own the transaction (see database.uow).
    """

    def enqueue(
        self,
        notification_id: Any,
        user_id: Any,
        channels: Iterable[str],
        run_at: Optional[datetime] = None
    ) -> NotificationOutbox:
        channel_list = normalize_channels(channels)
        if not channel_list:
            raise ValueError("Outbox job needs at least one channel")

        now = datetime.now(timezone.utc)
        job = NotificationOutbox(
            notification_id=coerce_uuid(notification_id),
            user_id=coerce_uuid(user_id),
            channels=channel_list,
            status=OutboxStatus.QUEUED,
            attempts=0,
            next_run_at=run_at or now,
            created_at=now,
            updated_at=now,
        )
        self.db.add(job)
        self.flush()

        logger.info(
            f"Outbox job {job.id} queued: notification={job.notification_id} "
            f"user={job.user_id} channels={','.join(channel_list)}"
        )
        return job

    def get(self, job_id: Any) -> Optional[NotificationOutbox]:
        stmt = select(NotificationOutbox).where(NotificationOutbox.id == coerce_uuid(job_id))
        return self.db.execute(stmt).scalar_one_or_none()

    def lease_next_batch(
        self,
        limit: int = 50,
        worker_id: Optional[str] = None,
        lease_seconds: int = DEFAULT_LEASE_SECONDS
    ) -> List[NotificationOutbox]:
        """
        Claim up to `limit` due jobs for this worker.

        Rows locked by a concurrent transaction are skipped rather than
        waited on, and the status flip happens in the same transaction, so
        two callers never receive the same job.
        """
        if limit <= 0:
            return []

        now = datetime.now(timezone.utc)
        stmt = (
            select(NotificationOutbox)
            .where(
                NotificationOutbox.status == OutboxStatus.QUEUED,
                NotificationOutbox.next_run_at <= now
            )
            .order_by(
                NotificationOutbox.next_run_at.asc(),
                NotificationOutbox.created_at.asc(),
                NotificationOutbox.id.asc()
            )
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        jobs = self.db.execute(stmt).scalars().all()

        if not jobs:
            return []

        leased_until = now + timedelta(seconds=lease_seconds)
        for job in jobs:
            job.status = OutboxStatus.PROCESSING
            job.leased_by = worker_id
            job.leased_until = leased_until
            job.updated_at = now
        self.flush()

        logger.debug(f"Leased {len(jobs)} outbox job(s) for {worker_id or 'anonymous worker'}")
        return list(jobs)

    def _leased_job(self, job_id: Any, worker_id: Optional[str]):
        """
        WHERE clause for writes made on behalf of the lease holder.

        Only a job still in 'processing' can take an outcome, and when a
        worker id is given it must still own the lease. A worker whose lease
        expired and was handed to someone else matches nothing.
        """
        clauses = [
            NotificationOutbox.id == coerce_uuid(job_id),
            NotificationOutbox.status == OutboxStatus.PROCESSING,
        ]
        if worker_id is not None:
            clauses.append(NotificationOutbox.leased_by == worker_id)
        return and_(*clauses)

    def _lease_lost(self, job_id: Any, worker_id: Optional[str], action: str) -> None:
        logger.warning(
            f"Outbox job {job_id}: lease no longer held by {worker_id or 'anonymous worker'}; "
            f"{action} discarded"
        )

    def renew_lease(
        self,
        job_id: Any,
        worker_id: Optional[str],
        lease_seconds: int = DEFAULT_LEASE_SECONDS
    ) -> bool:
        """Push leased_until out again. False when the lease was lost."""
        now = datetime.now(timezone.utc)
        result = self.db.execute(
            update(NotificationOutbox)
            .where(self._leased_job(job_id, worker_id))
            .values(leased_until=now + timedelta(seconds=lease_seconds), updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if not result.rowcount:
            self._lease_lost(job_id, worker_id, "renewal")
            return False
        return True

    def mark_sent(self, job_id: Any, worker_id: Optional[str] = None) -> bool:
        result = self.db.execute(
            update(NotificationOutbox)
            .where(self._leased_job(job_id, worker_id))
            .values(
                status=OutboxStatus.SENT,
                leased_by=None,
                leased_until=None,
                updated_at=datetime.now(timezone.utc)
            )
            .execution_options(synchronize_session=False)
        )
        if not result.rowcount:
            self._lease_lost(job_id, worker_id, "sent outcome")
            return False
        return True

    def reschedule_failure(
        self,
        job_id: Any,
        error: str,
        delay_seconds: float,
        attempts: int,
        max_attempts: int = MAX_ATTEMPTS,
        worker_id: Optional[str] = None
    ) -> Optional[OutboxStatus]:
        """
        Record a failed attempt.

        `attempts` is the number of failures recorded before this one. The
        job is retried after `delay_seconds` until it has recorded
        `max_attempts` failures, then it is failed for good. So with the
        default cap, a call with attempts=4 fails the job (the fifth recorded
        failure) rather than requeueing it with attempts=5.

        Returns the new status, or None when the caller no longer holds the
        lease and nothing was written.
        """
        now = datetime.now(timezone.utc)
        new_attempts = attempts + 1
        status = OutboxStatus.FAILED if new_attempts >= max_attempts else OutboxStatus.QUEUED

        values: Dict[str, Any] = {
            'status': status,
            'attempts': new_attempts,
            'last_error': error,
            'leased_by': None,
            'leased_until': None,
            'updated_at': now,
        }
        if status == OutboxStatus.QUEUED:
            values['next_run_at'] = now + timedelta(seconds=delay_seconds)

        result = self.db.execute(
            update(NotificationOutbox)
            .where(self._leased_job(job_id, worker_id))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if not result.rowcount:
            self._lease_lost(job_id, worker_id, f"failure ({error})")
            return None

        if status == OutboxStatus.FAILED:
            logger.error(f"Outbox job {job_id} failed permanently after {new_attempts} attempt(s): {error}")
        else:
            logger.warning(
                f"Outbox job {job_id} rescheduled in {delay_seconds:.0f}s "
                f"(attempt {new_attempts}/{max_attempts}): {error}"
            )
        return status

    def mark_failed(self, job_id: Any, error: str, worker_id: Optional[str] = None) -> bool:
        """Terminal failure without retry (missing data, permanent errors)."""
        result = self.db.execute(
            update(NotificationOutbox)
            .where(self._leased_job(job_id, worker_id))
            .values(
                status=OutboxStatus.FAILED,
                last_error=error,
                leased_by=None,
                leased_until=None,
                updated_at=datetime.now(timezone.utc)
            )
            .execution_options(synchronize_session=False)
        )
        if not result.rowcount:
            self._lease_lost(job_id, worker_id, f"terminal failure ({error})")
            return False
        logger.error(f"Outbox job {job_id} dropped: {error}")
        return True

    def reclaim_expired_leases(self, now: Optional[datetime] = None) -> int:
        """Requeue jobs whose worker stopped renewing them (crash, kill -9)."""
        now = now or datetime.now(timezone.utc)
        result = self.db.execute(
            update(NotificationOutbox)
            .where(
                NotificationOutbox.status == OutboxStatus.PROCESSING,
                NotificationOutbox.leased_until < now
            )
            .values(
                status=OutboxStatus.QUEUED,
                leased_by=None,
                leased_until=None,
                last_error=LEASE_EXPIRED_ERROR,
                updated_at=now
            )
            .execution_options(synchronize_session=False)
        )

        count = result.rowcount or 0
        if count > 0:
            logger.warning(f"Reclaimed {count} outbox job(s) with expired leases")
        return count

    def count_by_status(self) -> Dict[str, int]:
        stmt = (
            select(NotificationOutbox.status, func.count())
            .group_by(NotificationOutbox.status)
        )
        counts = {status.value: 0 for status in OutboxStatus}
        for status, count in self.db.execute(stmt).all():
            counts[status.value] = count
        return counts
