# setup_db.py
import logging

import config
from db import Base, SessionLocal, engine
from logging_config import setup_logging
from models.offline_action import OfflineAction  # noqa: F401
from models.paper import Paper  # noqa: F401
from models.quiz_attempt import QuizAttempt  # noqa: F401
from models.user import User
from models.user_level import UserLevel

logger = logging.getLogger("setup_db")

DEMO_USERS = [
    {"username": "his_royalty", "email": "his_royalty@example.com", "is_admin": False},
    {"username": "arise", "email": "arise@example.com", "is_admin": False},
    {"username": "admin", "email": "admin@example.com", "is_admin": True},
]


def seed(db):
    for data in config.DEFAULT_LEVELS:
        if db.query(UserLevel).filter_by(level=data["level"]).first() is None:
            db.add(UserLevel(**data))

    for data in DEMO_USERS:
        if db.query(User).filter_by(username=data["username"]).first() is None:
            db.add(User(**data, badges=[]))

    db.commit()


if __name__ == "__main__":
    setup_logging()
    logger.info("Dropping tables...")
    Base.metadata.drop_all(bind=engine)
    logger.info("Creating tables...")
    Base.metadata.create_all(bind=engine)

    session = SessionLocal()
    try:
        seed(session)
    finally:
        session.close()
    logger.info("Done.")
