import logging
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import select, update

from database.models import Notification, User, coerce_uuid
from database.repositories.base import BaseRepository

logger = logging.getLogger(__name__)


class NotificationRepository(BaseRepository):
    """Read access to the application's notifications and users."""

    def get(self, notification_id: Any) -> Optional[Notification]:
        stmt = select(Notification).where(Notification.id == coerce_uuid(notification_id))
        return self.db.execute(stmt).scalar_one_or_none()

    def get_user_email(self, user_id: Any) -> Optional[str]:
        stmt = select(User.email).where(User.id == coerce_uuid(user_id))
        return self.db.execute(stmt).scalar_one_or_none()

    def get_user_push_token(self, user_id: Any) -> Optional[str]:
        stmt = select(User.fcm_token).where(User.id == coerce_uuid(user_id))
        return self.db.execute(stmt).scalar_one_or_none()

    def clear_user_push_token(self, user_id: Any) -> bool:
        """Forget a registration token Firebase no longer accepts."""
        result = self.db.execute(
            update(User)
            .where(User.id == coerce_uuid(user_id), User.fcm_token.is_not(None))
            .values(fcm_token=None, fcm_token_updated_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            logger.info(f"Cleared stale FCM token for user {user_id}")
            return True
        return False
