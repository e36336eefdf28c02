import enum
import uuid

from sqlalchemy import Column, Text, Integer, String, Enum, Uuid, UniqueConstraint, Index, func

from .base import Base
from .types import UTCDateTime, utcnow


class DeliveryStatus(str, enum.Enum):
    QUEUED = "queued"
    SENT = "sent"
    FAILED = "failed"
    ACKNOWLEDGED = "acknowledged"

    @property
    def is_delivered(self) -> bool:
        return self in (DeliveryStatus.SENT, DeliveryStatus.ACKNOWLEDGED)


class NotificationDelivery(Base):
    """
    Per-channel delivery ledger.

    At most one row per (notification, user, channel). Channels progress
    independently of each other and of the outbox job that produced them.
    """
    __tablename__ = 'notification_deliveries'

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    notification_id = Column(Uuid(as_uuid=True), nullable=False)
    user_id = Column(Uuid(as_uuid=True), nullable=False, index=True)
    channel = Column(String(32), nullable=False)  # socket, email, webhook, ...

    status = Column(
        Enum(
            DeliveryStatus,
            name='delivery_status',
            native_enum=False,
            length=16,
            values_callable=lambda e: [m.value for m in e],
        ),
        nullable=False,
        default=DeliveryStatus.QUEUED,
    )
    attempts = Column(Integer, nullable=False, default=0)
    sent_at = Column(UTCDateTime, nullable=True)
    ack_at = Column(UTCDateTime, nullable=True)
    last_error = Column(Text, nullable=True)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow, server_default=func.now())
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, server_default=func.now(), onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint('notification_id', 'user_id', 'channel', name='uq_delivery_notification_user_channel'),
        Index('idx_delivery_channel', 'channel'),
        Index('idx_delivery_status', 'status'),
    )

    def __repr__(self) -> str:
        return (
            f"<NotificationDelivery notification={self.notification_id} user={self.user_id} "
            f"channel={self.channel} status={self.status.value if self.status else None}>"
        )
