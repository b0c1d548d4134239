"""
Tests for core.db: WAL connections and the BEGIN IMMEDIATE transaction helper.
"""

import sqlite3

import pytest

from blackvault.core.db import connect, transaction


@pytest.fixture
def db_path(tmp_path):
    path = tmp_path / "test.db"
    conn = connect(path)
    conn.execute("CREATE TABLE t (v INTEGER)")
    conn.close()
    return path


class TestConnect:
    def test_pragmas(self, db_path):
        conn = connect(db_path)
        try:
            assert conn.execute("PRAGMA journal_mode").fetchone()[0] == "wal"
            assert conn.execute("PRAGMA busy_timeout").fetchone()[0] == 5000
            assert conn.execute("PRAGMA foreign_keys").fetchone()[0] == 1
            assert conn.isolation_level is None
        finally:
            conn.close()

    def test_row_factory(self, db_path):
        conn = connect(db_path, row_factory=True)
        try:
            assert conn.row_factory is sqlite3.Row
        finally:
            conn.close()


class TestTransaction:
    def _values(self, db_path):
        conn = connect(db_path)
        try:
            return [r[0] for r in conn.execute("SELECT v FROM t ORDER BY v")]
        finally:
            conn.close()

    def test_commit(self, db_path):
        conn = connect(db_path)
        with transaction(conn):
            conn.execute("INSERT INTO t VALUES (1)")
            conn.execute("INSERT INTO t VALUES (2)")
        conn.close()
        assert self._values(db_path) == [1, 2]

    def test_rollback_on_error(self, db_path):
        conn = connect(db_path)
        with pytest.raises(RuntimeError):
            with transaction(conn):
                conn.execute("INSERT INTO t VALUES (1)")
                raise RuntimeError("boom")
        conn.close()
        assert self._values(db_path) == []
