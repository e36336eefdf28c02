from database.repositories.base import BaseRepository
from database.repositories.outbox import OutboxRepository
from database.repositories.delivery import DeliveryRepository
from database.repositories.notification import NotificationRepository

__all__ = [
    'BaseRepository',
    'OutboxRepository',
    'DeliveryRepository',
    'NotificationRepository',
]
