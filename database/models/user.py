import uuid

from sqlalchemy import Column, Text, Uuid

from .base import Base
from .types import UTCDateTime


class User(Base):
    """
    Read-only view of the application's user accounts.

    Only the columns the channels need to reach a recipient: the email
    address and the device's FCM registration token. The pipeline writes
    back to fcm_token only to clear a token Firebase reports as dead.
    """
    __tablename__ = 'users'

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    email = Column(Text, nullable=True)
    display_name = Column(Text, nullable=True)
    fcm_token = Column(Text, nullable=True)
    fcm_token_updated_at = Column(UTCDateTime, nullable=True)
