"""Database URL helpers for Alembic migrations.

Kept apart from env.py so they can be tested without an alembic context.
"""

from __future__ import annotations

import os

from psycopg2.extensions import parse_dsn
from sqlalchemy.engine import URL


def database_url() -> str:
    """SQLAlchemy URL for DATABASE_URL (URI or libpq key=value form).

    DB_PASSWORD fills in the password when the DSN has none. A host that is
    a directory (Unix socket) is passed as the `host` query parameter.

    Raises:
        RuntimeError: If DATABASE_URL is not set.
    """
    dsn = os.environ.get("DATABASE_URL")
    if not dsn:
        raise RuntimeError("DATABASE_URL is required to run migrations")

    params = parse_dsn(dsn)
    password = params.get("password") or os.environ.get("DB_PASSWORD") or None

    host = params.get("host")
    query: dict[str, str] = {}
    if host and host.startswith("/"):
        query["host"] = host
        host = None

    port = params.get("port")
    url = URL.create(
        "postgresql+psycopg2",
        username=params.get("user"),
        password=password,
        host=host,
        port=int(port) if port else None,
        database=params.get("dbname"),
        query=query,
    )
    return url.render_as_string(hide_password=False)
