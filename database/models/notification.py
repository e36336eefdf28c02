import uuid

from sqlalchemy import Column, Text, String, Uuid

from .base import Base
from .types import JSONType, UTCDateTime


class Notification(Base):
    """
    Notification content, owned by the application that creates it.

    The delivery pipeline only reads these rows; it never creates the table
    in production (see database.init_db).
    """
    __tablename__ = 'notifications'

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    title = Column(Text, nullable=False)
    content = Column(Text, nullable=False)
    notification_type = Column(String(32), nullable=False, default='system')  # message, assignment, announcement, event, system
    priority = Column(String(16), nullable=False, default='normal')  # low, normal, high, urgent
    action_url = Column(Text, nullable=True)
    action_data = Column(JSONType, nullable=True)
    image_url = Column(Text, nullable=True)
    created_at = Column(UTCDateTime, nullable=True)
