"""Tests for the outbox store: enqueue, leasing, retry bookkeeping and lease reclaim."""

import unittest
import uuid
from datetime import datetime, timezone, timedelta

from database.models import NotificationOutbox, OutboxStatus
from database.repositories.outbox import LEASE_EXPIRED_ERROR, normalize_channels
from tests.fixtures.outbox_fixtures import make_sqlite_engine, make_uow_factory


class OutboxRepositoryTestCase(unittest.TestCase):

    def setUp(self):
        self.engine = make_sqlite_engine()
        self.uow = make_uow_factory(self.engine)

    def tearDown(self):
        self.engine.dispose()

    def enqueue(self, channels=('socket', 'email'), run_at=None):
        with self.uow() as uow:
            return uow.outbox.enqueue(uuid.uuid4(), uuid.uuid4(), list(channels), run_at=run_at)

    def get(self, job_id) -> NotificationOutbox:
        with self.uow() as uow:
            return uow.outbox.get(job_id)

    def lease(self, limit=10, worker_id='worker-a', lease_seconds=300):
        with self.uow() as uow:
            return uow.outbox.lease_next_batch(limit, worker_id=worker_id, lease_seconds=lease_seconds)


class TestNormalizeChannels(unittest.TestCase):

    def test_dedupes_preserving_first_occurrence(self):
        self.assertEqual(normalize_channels(['email', 'socket', 'email']), ['email', 'socket'])

    def test_strips_and_lowercases(self):
        self.assertEqual(normalize_channels([' Socket ', 'EMAIL', '']), ['socket', 'email'])

    def test_none_is_empty(self):
        self.assertEqual(normalize_channels(None), [])


class TestEnqueue(OutboxRepositoryTestCase):

    def test_enqueue_creates_queued_job(self):
        before = datetime.now(timezone.utc)
        job = self.enqueue(['socket', 'email'])

        stored = self.get(job.id)
        self.assertEqual(stored.status, OutboxStatus.QUEUED)
        self.assertEqual(stored.attempts, 0)
        self.assertEqual(stored.channels, ['socket', 'email'])
        self.assertIsNone(stored.last_error)
        self.assertGreaterEqual(stored.next_run_at, before - timedelta(seconds=1))
        self.assertLessEqual(stored.next_run_at, datetime.now(timezone.utc))

    def test_enqueue_with_run_at(self):
        run_at = datetime.now(timezone.utc) + timedelta(hours=1)
        job = self.enqueue(['email'], run_at=run_at)

        stored = self.get(job.id)
        self.assertAlmostEqual(stored.next_run_at.timestamp(), run_at.timestamp(), delta=0.001)

    def test_enqueue_empty_channels_raises(self):
        with self.assertRaises(ValueError):
            self.enqueue([])

        with self.uow() as uow:
            self.assertEqual(uow.outbox.count_by_status()['queued'], 0)

    def test_enqueue_does_not_deduplicate_jobs(self):
        notification_id, user_id = uuid.uuid4(), uuid.uuid4()
        with self.uow() as uow:
            first = uow.outbox.enqueue(notification_id, user_id, ['socket'])
            second = uow.outbox.enqueue(notification_id, user_id, ['socket'])

        self.assertNotEqual(first.id, second.id)

    def test_enqueue_accepts_string_ids(self):
        notification_id = uuid.uuid4()
        with self.uow() as uow:
            job = uow.outbox.enqueue(str(notification_id), str(uuid.uuid4()), ['socket'])

        self.assertEqual(self.get(job.id).notification_id, notification_id)


class TestLeaseNextBatch(OutboxRepositoryTestCase):

    def test_lease_flips_to_processing_and_stamps_lease(self):
        job = self.enqueue()

        leased = self.lease(worker_id='worker-a', lease_seconds=120)

        self.assertEqual([j.id for j in leased], [job.id])
        stored = self.get(job.id)
        self.assertEqual(stored.status, OutboxStatus.PROCESSING)
        self.assertEqual(stored.leased_by, 'worker-a')
        self.assertGreater(stored.leased_until, datetime.now(timezone.utc) + timedelta(seconds=100))

    def test_leased_job_is_not_leased_again(self):
        self.enqueue()

        first = self.lease()
        second = self.lease(worker_id='worker-b')

        self.assertEqual(len(first), 1)
        self.assertEqual(second, [])

    def test_future_jobs_are_not_eligible(self):
        self.enqueue(run_at=datetime.now(timezone.utc) + timedelta(minutes=5))

        self.assertEqual(self.lease(), [])

    def test_orders_by_next_run_at(self):
        now = datetime.now(timezone.utc)
        late = self.enqueue(run_at=now - timedelta(seconds=10))
        early = self.enqueue(run_at=now - timedelta(seconds=60))
        middle = self.enqueue(run_at=now - timedelta(seconds=30))

        leased = self.lease()

        self.assertEqual([j.id for j in leased], [early.id, middle.id, late.id])

    def test_respects_limit(self):
        for _ in range(5):
            self.enqueue()

        self.assertEqual(len(self.lease(limit=3)), 3)
        self.assertEqual(len(self.lease(limit=3)), 2)

    def test_zero_limit_returns_empty(self):
        self.enqueue()
        self.assertEqual(self.lease(limit=0), [])

    def test_terminal_jobs_are_never_leased(self):
        sent = self.enqueue()
        failed = self.enqueue()
        self.lease()
        with self.uow() as uow:
            uow.outbox.mark_sent(sent.id)
            uow.outbox.mark_failed(failed.id, "gone")

        self.assertEqual(self.lease(), [])


class TestOutcomes(OutboxRepositoryTestCase):

    def test_mark_sent_clears_lease(self):
        job = self.enqueue()
        self.lease()

        with self.uow() as uow:
            uow.outbox.mark_sent(job.id)

        stored = self.get(job.id)
        self.assertEqual(stored.status, OutboxStatus.SENT)
        self.assertEqual(stored.attempts, 0)
        self.assertIsNone(stored.leased_by)
        self.assertIsNone(stored.leased_until)

    def test_reschedule_requeues_with_delay(self):
        job = self.enqueue()
        self.lease()

        with self.uow() as uow:
            status = uow.outbox.reschedule_failure(job.id, "smtp timeout", 60, attempts=0)

        self.assertEqual(status, OutboxStatus.QUEUED)
        stored = self.get(job.id)
        self.assertEqual(stored.status, OutboxStatus.QUEUED)
        self.assertEqual(stored.attempts, 1)
        self.assertEqual(stored.last_error, "smtp timeout")
        self.assertGreater(stored.next_run_at, datetime.now(timezone.utc) + timedelta(seconds=50))
        self.assertIsNone(stored.leased_by)
        # Not due yet
        self.assertEqual(self.lease(), [])

    def test_reschedule_fails_job_at_attempt_cap(self):
        job = self.enqueue()
        self.lease()

        with self.uow() as uow:
            status = uow.outbox.reschedule_failure(job.id, "smtp timeout", 60, attempts=4, max_attempts=5)

        self.assertEqual(status, OutboxStatus.FAILED)
        stored = self.get(job.id)
        self.assertEqual(stored.status, OutboxStatus.FAILED)
        self.assertEqual(stored.attempts, 5)
        self.assertEqual(stored.last_error, "smtp timeout")

    def test_reschedule_past_cap_still_fails(self):
        job = self.enqueue()
        self.lease()

        with self.uow() as uow:
            status = uow.outbox.reschedule_failure(job.id, "boom", 60, attempts=7, max_attempts=5)

        self.assertEqual(status, OutboxStatus.FAILED)
        self.assertEqual(self.get(job.id).attempts, 8)

    def test_job_fails_after_max_attempts_failures(self):
        job = self.enqueue()

        statuses = []
        for attempts in range(5):
            leased = self.lease()
            self.assertEqual(len(leased), 1)
            with self.uow() as uow:
                statuses.append(uow.outbox.reschedule_failure(job.id, "down", 0, attempts=leased[0].attempts))

        self.assertEqual(statuses[:4], [OutboxStatus.QUEUED] * 4)
        self.assertEqual(statuses[4], OutboxStatus.FAILED)
        self.assertEqual(self.get(job.id).attempts, 5)
        self.assertEqual(self.lease(), [])

    def test_mark_failed_is_terminal_without_attempt(self):
        job = self.enqueue()
        self.lease()

        with self.uow() as uow:
            uow.outbox.mark_failed(job.id, "notification not found")

        stored = self.get(job.id)
        self.assertEqual(stored.status, OutboxStatus.FAILED)
        self.assertEqual(stored.attempts, 0)
        self.assertEqual(stored.last_error, "notification not found")
        self.assertTrue(stored.status.is_terminal)


class TestReclaimExpiredLeases(OutboxRepositoryTestCase):

    def test_expired_lease_goes_back_to_queue(self):
        job = self.enqueue()
        self.lease(worker_id='crashed', lease_seconds=30)

        with self.uow() as uow:
            count = uow.outbox.reclaim_expired_leases(now=datetime.now(timezone.utc) + timedelta(seconds=60))

        self.assertEqual(count, 1)
        stored = self.get(job.id)
        self.assertEqual(stored.status, OutboxStatus.QUEUED)
        self.assertEqual(stored.attempts, 0)
        self.assertEqual(stored.last_error, LEASE_EXPIRED_ERROR)
        self.assertIsNone(stored.leased_by)

        self.assertEqual([j.id for j in self.lease(worker_id='worker-b')], [job.id])

    def test_live_lease_is_left_alone(self):
        job = self.enqueue()
        self.lease(lease_seconds=300)

        with self.uow() as uow:
            count = uow.outbox.reclaim_expired_leases()

        self.assertEqual(count, 0)
        self.assertEqual(self.get(job.id).status, OutboxStatus.PROCESSING)


class TestLeaseOwnership(OutboxRepositoryTestCase):

    def take_over(self, job_id):
        """Let worker-a's lease lapse and hand the job to worker-b."""
        with self.uow() as uow:
            uow.outbox.reclaim_expired_leases(now=datetime.now(timezone.utc) + timedelta(seconds=60))
        leased = self.lease(worker_id='worker-b')
        self.assertEqual([j.id for j in leased], [job_id])

    def test_stale_worker_cannot_requeue_a_sent_job(self):
        job = self.enqueue()
        self.lease(worker_id='worker-a', lease_seconds=1)
        self.take_over(job.id)

        with self.uow() as uow:
            self.assertTrue(uow.outbox.mark_sent(job.id, worker_id='worker-b'))

        with self.uow() as uow:
            status = uow.outbox.reschedule_failure(job.id, "smtp timeout", 60, 0, worker_id='worker-a')

        self.assertIsNone(status)
        stored = self.get(job.id)
        self.assertEqual(stored.status, OutboxStatus.SENT)
        self.assertEqual(stored.attempts, 0)
        self.assertIsNone(stored.last_error)

    def test_stale_worker_cannot_touch_job_leased_by_another(self):
        job = self.enqueue()
        self.lease(worker_id='worker-a', lease_seconds=1)
        self.take_over(job.id)

        with self.uow() as uow:
            self.assertFalse(uow.outbox.mark_sent(job.id, worker_id='worker-a'))
            self.assertFalse(uow.outbox.mark_failed(job.id, "boom", worker_id='worker-a'))

        stored = self.get(job.id)
        self.assertEqual(stored.status, OutboxStatus.PROCESSING)
        self.assertEqual(stored.leased_by, 'worker-b')

    def test_outcomes_on_terminal_job_are_ignored(self):
        job = self.enqueue()
        self.lease()
        with self.uow() as uow:
            uow.outbox.mark_failed(job.id, "notification not found")

        with self.uow() as uow:
            self.assertFalse(uow.outbox.mark_sent(job.id))
            self.assertIsNone(uow.outbox.reschedule_failure(job.id, "down", 0, attempts=0))

        stored = self.get(job.id)
        self.assertEqual(stored.status, OutboxStatus.FAILED)
        self.assertEqual(stored.last_error, "notification not found")

    def test_renew_lease_extends_deadline(self):
        job = self.enqueue()
        self.lease(worker_id='worker-a', lease_seconds=5)

        with self.uow() as uow:
            self.assertTrue(uow.outbox.renew_lease(job.id, 'worker-a', lease_seconds=600))

        stored = self.get(job.id)
        self.assertGreater(stored.leased_until, datetime.now(timezone.utc) + timedelta(seconds=500))
        self.assertEqual(stored.leased_by, 'worker-a')

    def test_renew_lease_fails_after_takeover(self):
        job = self.enqueue()
        self.lease(worker_id='worker-a', lease_seconds=1)
        self.take_over(job.id)

        with self.uow() as uow:
            self.assertFalse(uow.outbox.renew_lease(job.id, 'worker-a', lease_seconds=600))

        self.assertEqual(self.get(job.id).leased_by, 'worker-b')


class TestCountByStatus(OutboxRepositoryTestCase):

    def test_counts_every_status(self):
        for _ in range(3):
            self.enqueue()
        sent = self.enqueue(run_at=datetime.now(timezone.utc) - timedelta(hours=1))
        self.lease(limit=1)
        with self.uow() as uow:
            uow.outbox.mark_sent(sent.id)

        with self.uow() as uow:
            counts = uow.outbox.count_by_status()

        self.assertEqual(counts, {'queued': 3, 'processing': 0, 'sent': 1, 'failed': 0})


if __name__ == '__main__':
    unittest.main()
