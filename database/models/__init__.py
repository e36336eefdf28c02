from .base import Base
from .types import JSONType, UTCDateTime, coerce_uuid, utcnow
from .outbox import NotificationOutbox, OutboxStatus
from .delivery import NotificationDelivery, DeliveryStatus
from .notification import Notification
from .user import User

__all__ = [
    'Base',
    'JSONType',
    'UTCDateTime',
    'coerce_uuid',
    'utcnow',
    'NotificationOutbox',
    'OutboxStatus',
    'NotificationDelivery',
    'DeliveryStatus',
    'Notification',
    'User',
]
