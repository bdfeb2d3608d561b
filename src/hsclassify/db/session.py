"""Database engine and session factory.

Engines are created lazily per URL so importing this module never opens a
connection. SQLite URLs (tests, local runs) share a single connection so an
in-memory database survives across sessions.
"""

from __future__ import annotations

import os
from contextlib import contextmanager
from functools import lru_cache
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

DEFAULT_DATABASE_URL = "sqlite:///./hsclassify.db"


def database_url() -> str:
    return os.getenv("HSC_DATABASE_URL", DEFAULT_DATABASE_URL)


@lru_cache(maxsize=8)
def get_engine(url: str | None = None) -> Engine:
    url = url or database_url()
    if url.startswith("sqlite"):
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            echo=False,
        )
    return create_engine(
        url,
        poolclass=QueuePool,
        pool_size=10,  # Keep 10 connections in pool
        max_overflow=20,  # Allow 20 additional connections
        pool_pre_ping=True,  # Verify connections before using
        pool_recycle=3600,  # Recycle connections after 1 hour
        echo=False,
    )


def get_session_factory(url: str | None = None) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=get_engine(url))


@contextmanager
def get_standalone_session(factory: sessionmaker | None = None) -> Generator[Session, None, None]:
    """Context manager for a unit of work.

    Usage:
        with get_standalone_session(factory) as session:
            session.add(record)
    """
    session = (factory or get_session_factory())()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def init_db(url: str | None = None) -> None:
    """Create tables directly (tests and local runs).

    In production, use Alembic migrations:
        alembic upgrade head
    """
    from hsclassify.db.models import Base

    Base.metadata.create_all(bind=get_engine(url))


def drop_all(url: str | None = None) -> None:
    """Drop all tables (for testing only)."""
    from hsclassify.db.models import Base

    Base.metadata.drop_all(bind=get_engine(url))
