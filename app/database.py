# app/database.py
"""
Database connection, session management, and table creation.
Uses SQLAlchemy with PostgreSQL in production; SQLite URLs work for local runs.
All models are auto-imported here so create_tables() creates every table in one call.
"""

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from app.config import settings


def build_engine(url: str, **overrides):
    """Create an engine with pool settings suited to the backend behind `url`."""
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
    else:
        kwargs = {
            "pool_pre_ping": True,      # Auto-reconnect if DB connection drops
            "pool_size": 10,
            "max_overflow": 20,
        }
    kwargs["echo"] = False              # Set True to log all SQL queries (debug only)
    kwargs.update(overrides)
    return create_engine(url, **kwargs)


engine = build_engine(settings.DATABASE_URL)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def create_tables(bind=None):
    """
    Creates all DB tables. Safe to call multiple times.
    Import all models here so SQLAlchemy knows about them.
    """
    from app.models.event import Event                    # noqa
    from app.models.parking_session import ParkingSession  # noqa
    from app.models.zone_config import ZoneConfig          # noqa
    from app.models.upload import Upload                   # noqa

    Base.metadata.create_all(bind=bind or engine)
