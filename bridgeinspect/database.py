"""SQLite storage: record types, connection setup and schema migration."""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field, fields
from datetime import datetime
from typing import Optional

import bcrypt

logger = logging.getLogger(__name__)

DEFAULT_ADMIN_USERNAME = "admin"
DEFAULT_ADMIN_PASSWORD = "password"
DEFAULT_ADMIN_REAL_NAME = "系统管理员"
DEFAULT_ADMIN_EMAIL = "admin@example.com"
_BCRYPT_ROUNDS = 10


def _adapt_datetime(value: datetime) -> str:
    return value.isoformat(sep=" ", timespec="microseconds")


def _convert_datetime(raw: bytes) -> datetime:
    return datetime.fromisoformat(raw.decode())


sqlite3.register_adapter(datetime, _adapt_datetime)
sqlite3.register_converter("DATETIME", _convert_datetime)


class _Record:
    """Mixin that builds a record from a database row."""

    @classmethod
    def from_row(cls, row: sqlite3.Row):
        names = {f.name for f in fields(cls)}  # type: ignore[arg-type]
        return cls(**{key: row[key] for key in row.keys() if key in names})


@dataclass
class User(_Record):
    username: str = ""
    password: str = ""
    real_name: str = ""
    email: str = ""
    phone: str = ""
    role: str = "user"
    id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None

    def is_admin(self) -> bool:
        """Whether the user holds the administrator role."""
        return self.role == "admin"


@dataclass
class Bridge(_Record):
    bridge_name: str = ""
    bridge_code: str = ""
    address: str = ""
    longitude: float = 0.0
    latitude: float = 0.0
    bridge_type: str = ""
    build_year: int = 0
    length: float = 0.0
    width: float = 0.0
    status: str = "正常"
    model_3d_path: str = ""
    remark: str = ""
    user_id: int = 0
    id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None


@dataclass
class Drone(_Record):
    name: str = ""
    model: str = ""
    url: str = ""
    user_id: int = 0
    id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class Defect(_Record):
    bridge_id: int = 0
    defect_type: str = ""
    image_path: str = ""
    result_path: str = ""
    bbox: str = ""
    length: float = 0.0
    width: float = 0.0
    area: float = 0.0
    confidence: float = 0.0
    detected_at: Optional[datetime] = None
    id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None
    bridge: Optional[Bridge] = field(default=None, compare=False)


@dataclass
class Report(_Record):
    report_name: str = ""
    report_type: str = ""
    status: str = ""
    bridge_id: Optional[int] = None
    user_id: int = 0
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    health_score: float = 0.0
    defect_count: int = 0
    high_risk_count: int = 0
    file_path: str = ""
    file_size: int = 0
    error_message: str = ""
    id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None
    user: Optional[User] = field(default=None, compare=False)
    bridge: Optional[Bridge] = field(default=None, compare=False)


_SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    username TEXT NOT NULL UNIQUE,
    password TEXT NOT NULL,
    real_name TEXT NOT NULL DEFAULT '',
    email TEXT NOT NULL UNIQUE,
    phone TEXT NOT NULL DEFAULT '',
    role TEXT NOT NULL DEFAULT 'user',
    created_at DATETIME,
    updated_at DATETIME,
    deleted_at DATETIME
);
CREATE INDEX IF NOT EXISTS idx_users_deleted_at ON users(deleted_at);

CREATE TABLE IF NOT EXISTS bridges (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    bridge_name TEXT NOT NULL,
    bridge_code TEXT NOT NULL UNIQUE,
    address TEXT NOT NULL DEFAULT '',
    longitude REAL NOT NULL DEFAULT 0,
    latitude REAL NOT NULL DEFAULT 0,
    bridge_type TEXT NOT NULL DEFAULT '',
    build_year INTEGER NOT NULL DEFAULT 0,
    length REAL NOT NULL DEFAULT 0,
    width REAL NOT NULL DEFAULT 0,
    status TEXT NOT NULL DEFAULT '正常',
    model_3d_path TEXT NOT NULL DEFAULT '',
    remark TEXT NOT NULL DEFAULT '',
    user_id INTEGER NOT NULL,
    created_at DATETIME,
    updated_at DATETIME,
    deleted_at DATETIME
);
CREATE INDEX IF NOT EXISTS idx_bridges_user_id ON bridges(user_id);
CREATE INDEX IF NOT EXISTS idx_bridges_deleted_at ON bridges(deleted_at);

CREATE TABLE IF NOT EXISTS drones (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    model TEXT NOT NULL DEFAULT '',
    url TEXT NOT NULL DEFAULT '',
    user_id INTEGER NOT NULL,
    created_at DATETIME,
    updated_at DATETIME
);
CREATE INDEX IF NOT EXISTS idx_drones_user_id ON drones(user_id);

CREATE TABLE IF NOT EXISTS defects (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    bridge_id INTEGER NOT NULL,
    defect_type TEXT NOT NULL DEFAULT '',
    image_path TEXT NOT NULL DEFAULT '',
    result_path TEXT NOT NULL DEFAULT '',
    bbox TEXT NOT NULL DEFAULT '',
    length REAL NOT NULL DEFAULT 0,
    width REAL NOT NULL DEFAULT 0,
    area REAL NOT NULL DEFAULT 0,
    confidence REAL NOT NULL DEFAULT 0,
    detected_at DATETIME,
    created_at DATETIME,
    updated_at DATETIME,
    deleted_at DATETIME
);
CREATE INDEX IF NOT EXISTS idx_defects_bridge_id ON defects(bridge_id);
CREATE INDEX IF NOT EXISTS idx_defects_detected_at ON defects(detected_at);
CREATE INDEX IF NOT EXISTS idx_defects_deleted_at ON defects(deleted_at);

CREATE TABLE IF NOT EXISTS reports (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    report_name TEXT NOT NULL DEFAULT '',
    report_type TEXT NOT NULL DEFAULT '',
    status TEXT NOT NULL DEFAULT '',
    bridge_id INTEGER,
    user_id INTEGER NOT NULL,
    start_time DATETIME,
    end_time DATETIME,
    health_score REAL NOT NULL DEFAULT 0,
    defect_count INTEGER NOT NULL DEFAULT 0,
    high_risk_count INTEGER NOT NULL DEFAULT 0,
    file_path TEXT NOT NULL DEFAULT '',
    file_size INTEGER NOT NULL DEFAULT 0,
    error_message TEXT NOT NULL DEFAULT '',
    created_at DATETIME,
    updated_at DATETIME,
    deleted_at DATETIME
);
CREATE INDEX IF NOT EXISTS idx_reports_user_id ON reports(user_id);
CREATE INDEX IF NOT EXISTS idx_reports_bridge_id ON reports(bridge_id);
CREATE INDEX IF NOT EXISTS idx_reports_deleted_at ON reports(deleted_at);
"""


def connect(path: str) -> sqlite3.Connection:
    """Open the database at ``path``, check it answers and migrate the schema."""
    conn = sqlite3.connect(path, detect_types=sqlite3.PARSE_DECLTYPES)
    conn.row_factory = sqlite3.Row
    conn.execute("SELECT 1").fetchone()
    logger.info("数据库连接成功")
    migrate(conn)
    return conn


def migrate(conn: sqlite3.Connection) -> None:
    """Create missing tables and indexes, then ensure an administrator exists."""
    logger.info("开始数据库表结构迁移...")
    with conn:
        conn.executescript(_SCHEMA)
    logger.info("数据库表结构迁移完成")
    create_default_admin(conn)
    logger.info("数据库索引检查完成")


def create_default_admin(conn: sqlite3.Connection) -> Optional[User]:
    """Create the default administrator if no administrator exists.

    Returns the new user, or None when an administrator was already present.
    """
    (count,) = conn.execute(
        "SELECT COUNT(*) FROM users WHERE role = ? AND deleted_at IS NULL",
        ("admin",),
    ).fetchone()
    if count:
        return None

    hashed = bcrypt.hashpw(
        DEFAULT_ADMIN_PASSWORD.encode(), bcrypt.gensalt(rounds=_BCRYPT_ROUNDS)
    ).decode()
    now = datetime.now()
    admin = User(
        username=DEFAULT_ADMIN_USERNAME,
        password=hashed,
        real_name=DEFAULT_ADMIN_REAL_NAME,
        email=DEFAULT_ADMIN_EMAIL,
        role="admin",
        created_at=now,
        updated_at=now,
    )
    with conn:
        cursor = conn.execute(
            "INSERT INTO users (username, password, real_name, email, phone, role,"
            " created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (
                admin.username,
                admin.password,
                admin.real_name,
                admin.email,
                admin.phone,
                admin.role,
                admin.created_at,
                admin.updated_at,
            ),
        )
    admin.id = cursor.lastrowid
    logger.info("已创建默认管理员账户 (用户名: %s)", admin.username)
    logger.warning("请尽快修改默认密码！")
    return admin


def close(conn: sqlite3.Connection) -> None:
    """Close the connection."""
    conn.close()
    logger.info("数据库连接已关闭")


def log_level_for_mode(mode: str) -> int:
    """Logging level for a run mode: warnings only in release, everything otherwise."""
    if mode == "release":
        return logging.WARNING
    return logging.INFO