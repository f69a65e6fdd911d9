from .models import Base
from .session import engine

from notification_engine.utils.logging import get_logger

logger = get_logger()


def create_tables():
    Base.metadata.create_all(engine)
    logger.info("Created all tables.")


if __name__ == "__main__":
    create_tables()
