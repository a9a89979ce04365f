import logging
import sqlite3
from datetime import datetime

import bcrypt
import pytest

from bridgeinspect.database import (
    DEFAULT_ADMIN_PASSWORD,
    Bridge,
    User,
    close,
    connect,
    create_default_admin,
    log_level_for_mode,
    migrate,
)


@pytest.fixture
def conn():
    connection = connect(":memory:")
    yield connection
    connection.close()


def _table_names(connection):
    rows = connection.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
    return {row["name"] for row in rows}


def test_connect_creates_tables(conn):
    assert {"users", "bridges", "drones", "defects", "reports"} <= _table_names(conn)


def test_default_admin_created(conn):
    row = conn.execute("SELECT * FROM users WHERE role = 'admin'").fetchone()
    admin = User.from_row(row)
    assert admin.username == "admin"
    assert admin.real_name == "系统管理员"
    assert admin.email == "admin@example.com"
    assert admin.is_admin()
    assert bcrypt.checkpw(DEFAULT_ADMIN_PASSWORD.encode(), admin.password.encode())


def test_default_admin_not_duplicated(conn):
    assert create_default_admin(conn) is None
    migrate(conn)
    (count,) = conn.execute("SELECT COUNT(*) FROM users").fetchone()
    assert count == 1


def test_is_admin_for_plain_user():
    assert User(username="someone", role="user").is_admin() is False


def test_datetime_round_trip(conn):
    when = datetime(2024, 5, 6, 7, 8, 9, 123456)
    bridge = Bridge(bridge_name="B", bridge_code="BR001", user_id=1, created_at=when)
    conn.execute(
        "INSERT INTO bridges (bridge_name, bridge_code, user_id, created_at)"
        " VALUES (?, ?, ?, ?)",
        (bridge.bridge_name, bridge.bridge_code, bridge.user_id, bridge.created_at),
    )
    loaded = Bridge.from_row(conn.execute("SELECT * FROM bridges").fetchone())
    assert loaded.created_at == when
    assert loaded.bridge_code == "BR001"


def test_bridge_code_unique(conn):
    insert = "INSERT INTO bridges (bridge_name, bridge_code, user_id) VALUES (?, ?, ?)"
    conn.execute(insert, ("A", "BR001", 1))
    with pytest.raises(sqlite3.IntegrityError):
        conn.execute(insert, ("B", "BR001", 1))


@pytest.mark.parametrize(
    "mode, level",
    [("debug", logging.INFO), ("release", logging.WARNING), ("other", logging.INFO)],
)
def test_log_level_for_mode(mode, level):
    assert log_level_for_mode(mode) == level


def test_close_makes_connection_unusable():
    connection = connect(":memory:")
    close(connection)
    with pytest.raises(sqlite3.ProgrammingError):
        connection.execute("SELECT 1")