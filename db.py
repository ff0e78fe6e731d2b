# backend/db.py

from sqlalchemy import create_engine, event
from sqlalchemy.orm import declarative_base, sessionmaker

import config


def make_engine(url, **kwargs):
    if not url.startswith("sqlite"):
        kwargs.setdefault("pool_pre_ping", True)

    engine = create_engine(url, echo=config.SQL_ECHO, **kwargs)

    if engine.dialect.name == "sqlite":
        # pysqlite defers BEGIN on its own, which breaks SAVEPOINT; let SQLAlchemy emit it
        @event.listens_for(engine, "connect")
        def _on_connect(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None
            dbapi_connection.execute("PRAGMA foreign_keys=ON")

        @event.listens_for(engine, "begin")
        def _on_begin(conn):
            conn.exec_driver_sql("BEGIN")

    return engine


# SQLAlchemy engine (pooled; one session per request)
engine = make_engine(config.DATABASE_URL)

# Session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for models
Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
