import enum
import uuid

from sqlalchemy import Column, Text, Integer, String, Enum, Uuid, Index, func

from .base import Base
from .types import JSONType, UTCDateTime, utcnow


class OutboxStatus(str, enum.Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    SENT = "sent"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (OutboxStatus.SENT, OutboxStatus.FAILED)


class NotificationOutbox(Base):
    """
    Durable queue of pending deliveries.

    One row per (notification, user) carrying the ordered list of channels
    to deliver on. Rows are leased by workers and never deleted here; they
    remain as an audit trail once sent or failed.
    """
    __tablename__ = 'notification_outbox'

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    notification_id = Column(Uuid(as_uuid=True), nullable=False, index=True)
    user_id = Column(Uuid(as_uuid=True), nullable=False, index=True)
    channels = Column(JSONType, nullable=False, default=list)

    status = Column(
        Enum(
            OutboxStatus,
            name='outbox_status',
            native_enum=False,
            length=16,
            values_callable=lambda e: [m.value for m in e],
        ),
        nullable=False,
        default=OutboxStatus.QUEUED,
    )
    attempts = Column(Integer, nullable=False, default=0)  # Incremented only on failure
    next_run_at = Column(UTCDateTime, nullable=False, default=utcnow, server_default=func.now())
    last_error = Column(Text, nullable=True)

    # Lease ownership, set while status == 'processing'
    leased_by = Column(String(255), nullable=True)
    leased_until = Column(UTCDateTime, nullable=True)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow, server_default=func.now())
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, server_default=func.now(), onupdate=utcnow)

    __table_args__ = (
        # Lease scan: status = 'queued' AND next_run_at <= now()
        Index('idx_outbox_status_next_run', 'status', 'next_run_at'),
        # Reclaim sweep: status = 'processing' AND leased_until < now()
        Index('idx_outbox_lease', 'status', 'leased_until'),
    )

    def __repr__(self) -> str:
        return (
            f"<NotificationOutbox id={self.id} notification={self.notification_id} "
            f"user={self.user_id} status={self.status.value if self.status else None} "
            f"attempts={self.attempts}>"
        )
