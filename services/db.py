"""Standalone SQLAlchemy session factory for worker services.

Celery tasks run outside the Flask application context and obtain their
session here. The connection URL is taken from the ``DATABASE_URL``
environment variable and defaults to ``sqlite:///app.db`` for local
development.
"""

from __future__ import annotations

import os

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///app.db")


def sqlalchemy_url(url: str = DATABASE_URL) -> str:
    """Route plain PostgreSQL URLs through the psycopg 3 driver."""
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+psycopg://", 1)
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+psycopg://", 1)
    return url


# ``pool_pre_ping`` handles stale connections in long-running workers and
# ``pool_recycle`` refreshes them every 30 minutes.
_engine = create_engine(sqlalchemy_url(), pool_pre_ping=True, pool_recycle=1800)
_Session = sessionmaker(bind=_engine)


def get_session() -> Session:
    """Return a new SQLAlchemy session bound to the configured engine."""
    return _Session()
