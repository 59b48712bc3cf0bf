"""
Database engine and session factory.

Storage is a relational collaborator: the catalog, documents and classified
chunks are written upstream; this service writes analyses, corpora and
evidence. All pipeline writes go through RetryableStore, which opens one
session per operation.
"""
import os

from dotenv import load_dotenv
from sqlalchemy import create_engine, event
from sqlalchemy.orm import declarative_base, sessionmaker

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./evidence.db")

Base = declarative_base()


def build_engine(url: str = DATABASE_URL):
    engine_args = {}
    if url.startswith("sqlite"):
        # Store calls run in worker threads.
        engine_args["connect_args"] = {"check_same_thread": False}
    engine = create_engine(url, **engine_args)

    if url.startswith("sqlite"):
        @event.listens_for(engine, "connect")
        def _enable_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine


def build_session_factory(engine) -> sessionmaker:
    # Records are converted to pydantic models after commit, so keep attributes loaded.
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def init_db(engine) -> None:
    from . import tables  # noqa: F401  registers the mappers on Base

    Base.metadata.create_all(bind=engine)


engine = build_engine()
SessionLocal = build_session_factory(engine)
