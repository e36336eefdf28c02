#!/usr/bin/env python3
"""
Notification Dispatcher

Fans a leased outbox job out across its channels and keeps the delivery
ledger in step with what each provider reported.

Job outcome policy (best-effort fan-out): a job succeeds when at least one
channel was sent and no channel is left with an error worth retrying. A job
that is retried only re-attempts the channels that have not been delivered:
the ledger remembers which channels already went out.

Usage:
    dispatcher = NotificationDispatcher(providers)

    # Producer side
    dispatcher.enqueue(notification.id, [user_a, user_b], ['socket', 'email'])

    # Worker side
    result = dispatcher.process(job.id, notification, job.user_id, job.channels)
    if result.success:
        ...

    # Client acknowledgement
    dispatcher.acknowledge(notification_id, user_id)
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence

from database.models import NotificationOutbox
from database.repositories.outbox import normalize_channels
from database.uow import UowFactory, delivery_uow
from notification.channels import ChannelProvider, RateLimitException, SendResult

logger = logging.getLogger(__name__)

DEFAULT_CHANNELS = ('socket', 'email')


@dataclass
class ChannelError:
    channel: str
    message: str
    permanent: bool = False
    retry_after: Optional[int] = None


@dataclass
class DispatchResult:
    """Per-channel outcome of one job and the job-level verdict derived from it."""
    job_id: Any
    sent: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    errors: List[ChannelError] = field(default_factory=list)

    @property
    def retryable_errors(self) -> List[ChannelError]:
        return [e for e in self.errors if not e.permanent]

    @property
    def success(self) -> bool:
        return bool(self.sent) and not self.retryable_errors

    @property
    def permanent(self) -> bool:
        """Nothing sent, nothing pending, and every failure is one retrying cannot fix."""
        return (
            not self.sent
            and not self.skipped
            and bool(self.errors)
            and not self.retryable_errors
        )

    @property
    def retry_after(self) -> Optional[int]:
        hints = [e.retry_after for e in self.errors if e.retry_after]
        return max(hints) if hints else None

    @property
    def error_message(self) -> str:
        if self.errors:
            return "; ".join(f"{e.channel}: {e.message}" for e in self.errors)
        if self.skipped:
            return f"no channel delivered (skipped: {', '.join(self.skipped)})"
        return "no channel delivered"


class NotificationDispatcher:
    """
    Stateless coordinator over the outbox, the ledger and the providers.

    Every store call runs in its own short transaction so no database
    transaction stays open while a provider talks to the network.
    """

    def __init__(
        self,
        providers: Iterable[ChannelProvider],
        uow_factory: UowFactory = delivery_uow,
        default_channels: Sequence[str] = DEFAULT_CHANNELS
    ):
        self.providers: Dict[str, ChannelProvider] = {}
        for provider in providers:
            if provider.channel_type in self.providers:
                raise ValueError(f"Duplicate provider for channel '{provider.channel_type}'")
            self.providers[provider.channel_type] = provider
        self._uow = uow_factory
        self.default_channels = list(default_channels)

    def enqueue(
        self,
        notification_id: Any,
        user_ids: Iterable[Any],
        channels: Optional[Iterable[str]] = None,
        run_at: Optional[datetime] = None
    ) -> List[NotificationOutbox]:
        """
        Queue one job per user, creating ledger rows up front for observability.

        All rows are written in one transaction: either every user is queued
        or none is.
        """
        channel_list = normalize_channels(channels if channels is not None else self.default_channels)
        if not channel_list:
            raise ValueError("At least one channel is required")

        jobs = []
        with self._uow() as uow:
            for user_id in user_ids:
                for channel in channel_list:
                    uow.deliveries.upsert_queued(notification_id, user_id, channel)
                jobs.append(uow.outbox.enqueue(notification_id, user_id, channel_list, run_at=run_at))

        logger.info(f"Queued notification {notification_id} for {len(jobs)} user(s) via {','.join(channel_list)}")
        return jobs

    def process(self, job_id: Any, notification, user_id: Any, channels: Iterable[str]) -> DispatchResult:
        """
        Deliver one job on each of its channels.

        Provider errors are recorded in the ledger and collected in the
        result, never raised. Ledger write errors do propagate; the caller
        treats them as a failed attempt.

        A channel whose ledger row is already sent or acknowledged is not
        handed to its provider again. The ledger is keyed by (notification,
        user, channel), not by job, so a second enqueue of the same
        notification for the same user reports those channels as sent
        without resending them.
        """
        result = DispatchResult(job_id=job_id)

        for channel in channels:
            provider = self.providers.get(channel)
            if provider is None:
                logger.warning(f"No provider registered for channel '{channel}' (job {job_id}); skipping")
                result.skipped.append(channel)
                continue

            with self._uow() as uow:
                record = uow.deliveries.upsert_queued(notification.id, user_id, channel)

            if record.status.is_delivered:
                logger.info(f"Channel {channel} already delivered for notification {notification.id} / user {user_id}")
                result.sent.append(channel)
                continue

            try:
                outcome = provider.send(user_id, notification)
            except Exception as e:
                message = str(e) or e.__class__.__name__
                logger.error(f"Channel {channel} failed for job {job_id}: {message}")
                with self._uow() as uow:
                    uow.deliveries.mark_failed(record.id, message)
                result.errors.append(ChannelError(
                    channel=channel,
                    message=message,
                    permanent=getattr(e, 'permanent', False),
                    retry_after=e.retry_after if isinstance(e, RateLimitException) else None
                ))
                continue

            if outcome == SendResult.SENT:
                with self._uow() as uow:
                    uow.deliveries.mark_sent_by_composite(notification.id, user_id, channel)
                result.sent.append(channel)
            else:
                logger.info(f"Channel {channel} skipped for job {job_id}")
                result.skipped.append(channel)

        if result.success:
            logger.info(f"Job {job_id} delivered via {','.join(result.sent)}")
        else:
            logger.warning(f"Job {job_id} incomplete: {result.error_message}")
        return result

    def acknowledge(self, notification_id: Any, user_id: Any) -> int:
        with self._uow() as uow:
            count = uow.deliveries.acknowledge(notification_id, user_id)
        logger.info(f"Acknowledged notification {notification_id} for user {user_id} ({count} row(s))")
        return count

    def __repr__(self) -> str:
        return f"<NotificationDispatcher channels={sorted(self.providers)}>"
