import logging
from typing import Any, List, Optional
from datetime import datetime, timezone

from sqlalchemy import select, update, and_
from sqlalchemy.exc import IntegrityError

from database.models import NotificationDelivery, DeliveryStatus, coerce_uuid
from database.repositories.base import BaseRepository

logger = logging.getLogger(__name__)

# Only the socket channel has a client that can confirm rendering
ACKNOWLEDGEABLE_CHANNEL = 'socket'


class DeliveryRepository(BaseRepository):
    """
    Per-(notification, user, channel) delivery ledger.

    Creation is idempotent so retried jobs and concurrent workers converge
    on a single row per key.
    """

    def _composite(self, notification_id: Any, user_id: Any, channel: str):
        return and_(
            NotificationDelivery.notification_id == coerce_uuid(notification_id),
            NotificationDelivery.user_id == coerce_uuid(user_id),
            NotificationDelivery.channel == channel
        )

    def get_by_composite(self, notification_id: Any, user_id: Any, channel: str) -> Optional[NotificationDelivery]:
        stmt = select(NotificationDelivery).where(self._composite(notification_id, user_id, channel))
        return self.db.execute(stmt).scalar_one_or_none()

    def upsert_queued(self, notification_id: Any, user_id: Any, channel: str) -> NotificationDelivery:
        """Return the ledger row for the key, inserting a queued one if absent."""
        existing = self.get_by_composite(notification_id, user_id, channel)
        if existing:
            return existing

        now = datetime.now(timezone.utc)
        values = dict(
            notification_id=coerce_uuid(notification_id),
            user_id=coerce_uuid(user_id),
            channel=channel,
            status=DeliveryStatus.QUEUED,
            attempts=0,
            created_at=now,
            updated_at=now,
        )

        insert = self._dialect_insert()
        if insert is not None:
            stmt = insert(NotificationDelivery).values(**values).on_conflict_do_nothing(
                index_elements=['notification_id', 'user_id', 'channel']
            )
            self.db.execute(stmt)
        else:
            # No ON CONFLICT support: let the unique constraint decide inside a savepoint
            try:
                with self.db.begin_nested():
                    self.db.add(NotificationDelivery(**values))
            except IntegrityError:
                logger.debug(f"Delivery row for {notification_id}/{user_id}/{channel} created concurrently")

        return self.db.execute(
            select(NotificationDelivery)
            .where(self._composite(notification_id, user_id, channel))
            .execution_options(populate_existing=True)
        ).scalar_one()

    def _dialect_insert(self):
        dialect = self.dialect_name
        if dialect == 'postgresql':
            from sqlalchemy.dialects.postgresql import insert
            return insert
        if dialect == 'sqlite':
            from sqlalchemy.dialects.sqlite import insert
            return insert
        return None

    def mark_sent(self, delivery_id: Any) -> None:
        now = datetime.now(timezone.utc)
        self.db.execute(
            update(NotificationDelivery)
            .where(NotificationDelivery.id == coerce_uuid(delivery_id))
            .values(
                status=DeliveryStatus.SENT,
                sent_at=now,
                attempts=NotificationDelivery.attempts + 1,
                last_error=None,
                updated_at=now
            )
            .execution_options(synchronize_session=False)
        )

    def mark_sent_by_composite(self, notification_id: Any, user_id: Any, channel: str) -> int:
        now = datetime.now(timezone.utc)
        result = self.db.execute(
            update(NotificationDelivery)
            .where(self._composite(notification_id, user_id, channel))
            .values(
                status=DeliveryStatus.SENT,
                sent_at=now,
                attempts=NotificationDelivery.attempts + 1,
                last_error=None,
                updated_at=now
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    def mark_failed(self, delivery_id: Any, error: str) -> None:
        self.db.execute(
            update(NotificationDelivery)
            .where(NotificationDelivery.id == coerce_uuid(delivery_id))
            .values(
                status=DeliveryStatus.FAILED,
                last_error=error,
                attempts=NotificationDelivery.attempts + 1,
                updated_at=datetime.now(timezone.utc)
            )
            .execution_options(synchronize_session=False)
        )

    def acknowledge(self, notification_id: Any, user_id: Any) -> int:
        """Client confirmed it rendered the notification. Socket rows only."""
        now = datetime.now(timezone.utc)
        result = self.db.execute(
            update(NotificationDelivery)
            .where(self._composite(notification_id, user_id, ACKNOWLEDGEABLE_CHANNEL))
            .values(
                status=DeliveryStatus.ACKNOWLEDGED,
                ack_at=now,
                updated_at=now
            )
            .execution_options(synchronize_session=False)
        )
        count = result.rowcount or 0
        if count == 0:
            logger.debug(f"Nothing to acknowledge for notification {notification_id} / user {user_id}")
        return count

    def list_for_notification(self, notification_id: Any, user_id: Any = None) -> List[NotificationDelivery]:
        stmt = select(NotificationDelivery).where(
            NotificationDelivery.notification_id == coerce_uuid(notification_id)
        )
        if user_id is not None:
            stmt = stmt.where(NotificationDelivery.user_id == coerce_uuid(user_id))
        stmt = stmt.order_by(NotificationDelivery.user_id, NotificationDelivery.channel)
        return self.db.execute(stmt).scalars().all()
