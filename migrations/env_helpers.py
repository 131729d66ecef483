"""Database URL helpers for Alembic migrations.

Kept apart from env.py so they can be tested without alembic.context.
"""

from __future__ import annotations

import os

from psycopg2.extensions import parse_dsn
from sqlalchemy.engine import URL, make_url

_DRIVER = "postgresql+psycopg2"


def _libpq_dsn_to_url(dsn: str) -> str:
    """Convert a libpq key=value DSN to a SQLAlchemy URL string.

    A Cloud SQL socket host (host=/cloudsql/...) becomes a ?host= query
    parameter; a TCP host keeps host and port.
    """
    tokens = parse_dsn(dsn)
    password = tokens.get("password") or os.environ.get("DB_PASSWORD") or None
    host = tokens.get("host", "localhost")

    if host.startswith("/"):
        url = URL.create(
            _DRIVER,
            username=tokens.get("user"),
            password=password,
            database=tokens.get("dbname"),
            query={"host": host},
        )
    else:
        url = URL.create(
            _DRIVER,
            username=tokens.get("user"),
            password=password,
            host=host,
            port=int(tokens.get("port", "5432")),
            database=tokens.get("dbname"),
        )
    return url.render_as_string(hide_password=False)


def _get_database_url() -> str:
    """DATABASE_URL as a psycopg2 SQLAlchemy URL; DB_PASSWORD fills an empty password."""
    raw = os.environ.get("DATABASE_URL")
    if not raw:
        raise RuntimeError("DATABASE_URL is required to run migrations")
    if "://" not in raw:
        return _libpq_dsn_to_url(raw)

    url = make_url(raw)
    if url.drivername in ("postgres", "postgresql"):
        url = url.set(drivername=_DRIVER)
    db_password = os.environ.get("DB_PASSWORD", "")
    if db_password and not url.password:
        url = url.set(password=db_password)
    return url.render_as_string(hide_password=False)
