import os
from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

# Determine Database URL based on TESTING environment variable
if os.environ.get("TESTING"):
    SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"
    # A single shared connection so every session (and thread) sees the same in-memory database
    engine = create_engine(
        SQLALCHEMY_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
else:
    from dispatch.config import get_settings
    settings = get_settings()
    SQLALCHEMY_DATABASE_URL = settings["database_url"]
    connect_args = {"check_same_thread": False} if SQLALCHEMY_DATABASE_URL.startswith("sqlite") else {}
    engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args=connect_args)

# Each instance of SessionLocal is a database session
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# All SQLAlchemy models inherit from this class
Base = declarative_base()


def create_tables(bind=None):
    """Creates the queue tables if they don't exist. There are no migrations for the device-local store."""
    # Import models so they register on Base.metadata
    from dispatch.db import models  # noqa: F401
    Base.metadata.create_all(bind=bind or engine)
