import logging

from sqlalchemy.engine import Engine
from tenacity import retry, stop_after_attempt, wait_fixed

from database.database import get_engine
from database.models import Base, NotificationOutbox, NotificationDelivery

logger = logging.getLogger(__name__)

# Tables owned by the delivery pipeline. notifications and users belong to the application.
OWNED_TABLES = [NotificationOutbox.__table__, NotificationDelivery.__table__]


@retry(stop=stop_after_attempt(5), wait=wait_fixed(2), reraise=True)
def init_db(engine: Engine = None) -> None:
    engine = engine or get_engine()
    logger.info("Initializing database...")
    try:
        Base.metadata.create_all(bind=engine, tables=OWNED_TABLES)
        logger.info("Outbox and delivery tables created or verified.")
    except Exception as e:
        logger.error(f"Error initializing DB: {e}")
        raise
