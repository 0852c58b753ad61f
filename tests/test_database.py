import logging

import pytest

from lib.database import DatabaseConnection
from models.errors import DuplicateReportError


class FakeConnection:
    def __init__(self):
        self.committed = False
        self.rolled_back = False

    def commit(self):
        self.committed = True

    def rollback(self):
        self.rolled_back = True


class FakePool:
    def __init__(self):
        self.conn = FakeConnection()
        self.returned = []

    def getconn(self):
        return self.conn

    def putconn(self, conn):
        self.returned.append(conn)


@pytest.fixture
def database():
    db = DatabaseConnection()
    db.connection_pool = FakePool()
    return db


def test_policy_rejection_rolls_back_quietly(database, caplog):
    caplog.set_level(logging.DEBUG, logger="lib.database")

    with pytest.raises(DuplicateReportError):
        with database.connection():
            raise DuplicateReportError("media-1", "user-1")

    pool = database.connection_pool
    assert pool.conn.rolled_back
    assert pool.returned == [pool.conn]
    assert [r.levelno for r in caplog.records] == [logging.DEBUG]


def test_database_failure_is_logged_as_error(database, caplog):
    with pytest.raises(RuntimeError):
        with database.connection():
            raise RuntimeError("server closed the connection unexpectedly")

    assert database.connection_pool.conn.rolled_back
    errors = [r for r in caplog.records if r.levelno == logging.ERROR]
    assert "server closed the connection" in errors[0].getMessage()


def test_successful_unit_commits(database):
    with database.connection() as conn:
        pass

    assert conn.committed
    assert not conn.rolled_back
