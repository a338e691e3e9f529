"""Tests for the Alembic DATABASE_URL conversion."""

from __future__ import annotations

import os
import sys
from unittest.mock import patch

import pytest
from sqlalchemy.engine import make_url

# Make migrations.env_helpers importable without alembic context
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from migrations.env_helpers import database_url  # noqa: E402


def _url(env: dict):
    with patch.dict(os.environ, env, clear=True):
        return make_url(database_url())


class TestDatabaseUrl:
    def test_key_value_dsn(self):
        url = _url({"DATABASE_URL": "dbname=chatdesk user=admin password=pw host=localhost port=5432"})
        assert url.drivername == "postgresql+psycopg2"
        assert url.username == "admin"
        assert url.password == "pw"
        assert url.host == "localhost"
        assert url.port == 5432
        assert url.database == "chatdesk"

    def test_uri_dsn(self):
        url = _url({"DATABASE_URL": "postgresql://u:p@10.0.0.1:5433/mydb"})
        assert url.username == "u"
        assert url.password == "p"
        assert url.host == "10.0.0.1"
        assert url.port == 5433
        assert url.database == "mydb"

    def test_unix_socket_host_goes_to_query(self):
        url = _url({"DATABASE_URL": "dbname=db user=sa password=s3cret host=/cloudsql/proj:region:inst"})
        assert url.host is None
        assert url.query["host"] == "/cloudsql/proj:region:inst"

    def test_special_chars_survive(self):
        url = _url({"DATABASE_URL": "dbname=db user=u@domain password='p@ss w0rd' host=h"})
        assert url.username == "u@domain"
        assert url.password == "p@ss w0rd"

    def test_db_password_fills_missing(self):
        url = _url({"DATABASE_URL": "dbname=db user=u host=h", "DB_PASSWORD": "from-env"})
        assert url.password == "from-env"

    def test_dsn_password_wins_over_db_password(self):
        url = _url({"DATABASE_URL": "dbname=db user=u password=mine host=h", "DB_PASSWORD": "from-env"})
        assert url.password == "mine"

    def test_missing_database_url(self):
        with patch.dict(os.environ, {}, clear=True):
            with pytest.raises(RuntimeError, match="DATABASE_URL"):
                database_url()
