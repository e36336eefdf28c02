#!/usr/bin/env python3
"""
Outbox Worker for the Notification Delivery Pipeline

Polls the notification outbox, leases due jobs, hands each one to the
dispatcher and records the outcome: sent, rescheduled with a delay, or failed
for good. Jobs left in 'processing' by a crashed worker are put back in the
queue once their lease expires.

Several workers can run against the same database; leasing uses
FOR UPDATE SKIP LOCKED so a job is never handed to two of them at once.

Usage:
    uv run python -m notification.worker
    uv run python -m notification.worker --burst
    uv run python -m notification.worker --config config.yaml --verbose
"""

import os
import sys
import signal
import socket
import argparse
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional
from uuid import uuid4

from core.config_loader import AppConfig, OutboxConfig, load_config
from database.database import init_engine
from database.init_db import init_db
from database.models import NotificationOutbox
from database.repositories.outbox import MAX_ATTEMPTS, DEFAULT_LEASE_SECONDS
from database.uow import UowFactory, delivery_uow
from notification.channels import build_providers
from notification.connections import RedisConnectionRegistry
from notification.dispatcher import NotificationDispatcher

logger = logging.getLogger(__name__)

# Pause after an unexpected error in the poll loop itself, capped
MAX_LOOP_BACKOFF_SECONDS = 60.0


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid4().hex[:8]}"


class OutboxWorker:
    """
    Lease-dispatch-record loop over the outbox.

    One job's failure never affects the rest of its batch: every job is
    processed in isolation and any exception is recorded as a failed attempt.
    """

    def __init__(
        self,
        dispatcher: NotificationDispatcher,
        uow_factory: UowFactory = delivery_uow,
        *,
        batch_size: int = 25,
        poll_interval: float = 2.0,
        retry_delay_seconds: float = 60.0,
        backoff_factor: float = 1.0,
        max_attempts: int = MAX_ATTEMPTS,
        lease_seconds: int = DEFAULT_LEASE_SECONDS,
        reclaim_interval: float = 60.0,
        max_workers: int = 1,
        worker_id: Optional[str] = None
    ):
        self.dispatcher = dispatcher
        self._uow = uow_factory
        self.batch_size = batch_size
        self.poll_interval = poll_interval
        self.retry_delay_seconds = retry_delay_seconds
        self.backoff_factor = backoff_factor
        self.max_attempts = max_attempts
        self.lease_seconds = lease_seconds
        self.reclaim_interval = reclaim_interval
        self.max_workers = max(1, max_workers)
        self.worker_id = worker_id or default_worker_id()

        self._stop_event = threading.Event()
        self._last_reclaim: Optional[float] = None

    @classmethod
    def from_config(
        cls,
        dispatcher: NotificationDispatcher,
        config: OutboxConfig,
        uow_factory: UowFactory = delivery_uow,
        worker_id: Optional[str] = None
    ) -> 'OutboxWorker':
        return cls(
            dispatcher,
            uow_factory,
            batch_size=config.batch_size,
            poll_interval=config.poll_interval_seconds,
            retry_delay_seconds=config.retry_delay_seconds,
            backoff_factor=config.backoff_factor,
            max_attempts=config.max_attempts,
            lease_seconds=config.lease_seconds,
            reclaim_interval=config.reclaim_interval_seconds,
            max_workers=config.max_workers,
            worker_id=worker_id
        )

    def retry_delay_for(self, attempts: int, retry_after: Optional[int] = None) -> float:
        """Delay before the next attempt, given the failures recorded so far."""
        delay = self.retry_delay_seconds * (self.backoff_factor ** attempts)
        if retry_after:
            delay = max(delay, float(retry_after))
        return delay

    def reclaim_expired(self) -> int:
        with self._uow() as uow:
            count = uow.outbox.reclaim_expired_leases()
        self._last_reclaim = time.monotonic()
        return count

    def _reclaim_due(self) -> bool:
        if self._last_reclaim is None:
            return True
        return time.monotonic() - self._last_reclaim >= self.reclaim_interval

    def run_once(self) -> int:
        """
        Process one leased batch.

        Returns:
            Number of jobs leased (and handled) in this pass.
        """
        if self._reclaim_due():
            try:
                self.reclaim_expired()
            except Exception as e:
                logger.error(f"Lease reclaim failed: {e}")

        with self._uow() as uow:
            jobs = uow.outbox.lease_next_batch(
                self.batch_size,
                worker_id=self.worker_id,
                lease_seconds=self.lease_seconds
            )

        if not jobs:
            return 0

        logger.info(f"Worker {self.worker_id} leased {len(jobs)} job(s)")

        if self.max_workers == 1 or len(jobs) == 1:
            for job in jobs:
                self.process_job(job)
        else:
            with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
                list(executor.map(self.process_job, jobs))

        return len(jobs)

    def process_job(self, job: NotificationOutbox) -> None:
        """
        Dispatch one leased job and record its outcome. Never raises.

        The lease is renewed before dispatch, so each job gets a full
        lease_seconds however long the jobs before it in the batch took. A
        job whose lease already went to another worker is left alone, and
        outcome writes are dropped if the lease is lost during dispatch.
        """
        try:
            with self._uow() as uow:
                if not uow.outbox.renew_lease(job.id, self.worker_id, self.lease_seconds):
                    return
                notification = uow.notifications.get(job.notification_id)

            if notification is None:
                # Retrying cannot bring the row back
                with self._uow() as uow:
                    uow.outbox.mark_failed(
                        job.id, f"notification {job.notification_id} not found", worker_id=self.worker_id
                    )
                return

            result = self.dispatcher.process(job.id, notification, job.user_id, job.channels)

            with self._uow() as uow:
                if result.success:
                    uow.outbox.mark_sent(job.id, worker_id=self.worker_id)
                elif result.permanent:
                    uow.outbox.mark_failed(job.id, result.error_message, worker_id=self.worker_id)
                else:
                    uow.outbox.reschedule_failure(
                        job.id,
                        result.error_message,
                        self.retry_delay_for(job.attempts, result.retry_after),
                        job.attempts,
                        max_attempts=self.max_attempts,
                        worker_id=self.worker_id
                    )
        except Exception as e:
            logger.error(f"Job {job.id} raised during processing: {e}", exc_info=True)
            self._record_exception(job, e)

    def _record_exception(self, job: NotificationOutbox, error: Exception) -> None:
        try:
            with self._uow() as uow:
                uow.outbox.reschedule_failure(
                    job.id,
                    str(error) or error.__class__.__name__,
                    self.retry_delay_for(job.attempts),
                    job.attempts,
                    max_attempts=self.max_attempts,
                    worker_id=self.worker_id
                )
        except Exception as e:
            # The lease will expire and the reclaim sweep will requeue the job
            logger.error(f"Could not record failure for job {job.id}: {e}")

    def run_forever(self) -> None:
        logger.info(
            f"Outbox worker {self.worker_id} started "
            f"(batch={self.batch_size}, poll={self.poll_interval}s, workers={self.max_workers})"
        )
        backoff = self.poll_interval
        while not self._stop_event.is_set():
            try:
                handled = self.run_once()
                backoff = self.poll_interval
            except Exception as e:
                logger.error(f"Outbox poll failed: {e}", exc_info=True)
                self._stop_event.wait(backoff)
                backoff = min(backoff * 2, MAX_LOOP_BACKOFF_SECONDS)
                continue

            # A full batch likely means more is waiting
            if handled < self.batch_size:
                self._stop_event.wait(self.poll_interval)

        logger.info(f"Outbox worker {self.worker_id} stopped")

    def run_burst(self) -> int:
        """Drain everything currently due, then return the number of jobs handled."""
        total = 0
        while not self._stop_event.is_set():
            handled = self.run_once()
            total += handled
            if handled == 0:
                break
        return total

    def stop(self) -> None:
        self._stop_event.set()


def build_worker(config: AppConfig, uow_factory: UowFactory = delivery_uow) -> OutboxWorker:
    """Wire registry, providers, dispatcher and worker from configuration."""
    registry = None
    if config.socket.enabled and config.socket.redis_url:
        registry = RedisConnectionRegistry.from_url(config.socket.redis_url, key_prefix=config.socket.key_prefix)
        logger.info("Socket emits relayed through Redis")

    def email_lookup(user_id: str) -> Optional[str]:
        with uow_factory() as uow:
            return uow.notifications.get_user_email(user_id)

    def push_token_lookup(user_id: str) -> Optional[str]:
        with uow_factory() as uow:
            return uow.notifications.get_user_push_token(user_id)

    def push_token_remover(user_id: str) -> bool:
        with uow_factory() as uow:
            return uow.notifications.clear_user_push_token(user_id)

    providers = build_providers(config, registry, email_lookup, push_token_lookup, push_token_remover)
    dispatcher = NotificationDispatcher(
        providers,
        uow_factory=uow_factory,
        default_channels=config.outbox.default_channels
    )
    return OutboxWorker.from_config(dispatcher, config.outbox, uow_factory)


def main(argv: Optional[List[str]] = None):
    parser = argparse.ArgumentParser(description='Notification Outbox Worker')
    parser.add_argument('--config', default='config.yaml', help='Path to config.yaml')
    parser.add_argument('--burst', action='store_true', help='Process all due jobs and exit')
    parser.add_argument('--verbose', action='store_true')

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    try:
        config = load_config(args.config)
        init_engine(config.database.url, pool_size=config.database.pool_size, echo=config.database.echo)
        init_db()
    except Exception as e:
        logger.error(f"Error: {e}")
        sys.exit(1)

    worker = build_worker(config)

    def handle_signal(signum, frame):
        logger.info(f"Received signal {signum}, shutting down after the current batch")
        worker.stop()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    if args.burst:
        logger.info("Running in burst mode...")
        handled = worker.run_burst()
        logger.info(f"Burst finished: {handled} job(s) handled")
    else:
        logger.info("Worker started. Press Ctrl+C to stop.")
        worker.run_forever()


if __name__ == '__main__':
    main()
