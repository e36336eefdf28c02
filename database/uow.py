import contextlib
import logging
from typing import Callable, ContextManager, Optional

from sqlalchemy.orm import Session, sessionmaker

from database.database import SessionLocal, get_engine
from database.repositories import DeliveryRepository, NotificationRepository, OutboxRepository

logger = logging.getLogger(__name__)


class DeliveryUnitOfWork:
    """Repositories sharing one Session, i.e. one transaction."""

    def __init__(self, session: Session):
        self.session = session
        self.outbox = OutboxRepository(session)
        self.deliveries = DeliveryRepository(session)
        self.notifications = NotificationRepository(session)


UowFactory = Callable[[], ContextManager[DeliveryUnitOfWork]]


@contextlib.contextmanager
def delivery_uow(session_factory: Optional[sessionmaker] = None):
    """Per-unit-of-work transaction scope.

    Yields a DeliveryUnitOfWork bound to a fresh Session. Commits on success,
    rolls back on exception, always closes.

    Usage:
        with delivery_uow() as uow:
            jobs = uow.outbox.lease_next_batch(25)
        # commit happens automatically on successful exit
    """
    if session_factory is None:
        get_engine()
        session_factory = SessionLocal
    session = session_factory()
    try:
        yield DeliveryUnitOfWork(session)
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def uow_factory_for(session_factory: sessionmaker) -> UowFactory:
    """Bind delivery_uow to a specific sessionmaker (tests, secondary databases)."""
    def factory():
        return delivery_uow(session_factory)
    return factory
