"""Data access for users, bridges, drones, defects and reports over SQLite."""

from __future__ import annotations

import sqlite3
import time
from dataclasses import dataclass, fields
from datetime import datetime
from typing import Dict, Generic, Iterable, List, Optional, Sequence, Tuple, Type, TypeVar

from .database import Bridge, Defect, Drone, Report, User

T = TypeVar("T")

_NON_COLUMNS = frozenset({"id", "bridge", "user"})


class RecordNotFoundError(LookupError):
    """Raised when a record that must exist cannot be found."""


@dataclass
class DefectListFilters:
    """Filters and paging for listing defects."""

    current_user: Optional[User] = None
    bridge_id: Optional[int] = None
    defect_type: str = ""
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    page: int = 1
    page_size: int = 10


def _paging(page: int, page_size: int) -> Tuple[str, Tuple[int, int]]:
    offset = (page - 1) * page_size
    limit = page_size if page_size >= 0 else -1
    return " LIMIT ? OFFSET ?", (limit, max(offset, 0))


def _load_bridges(conn: sqlite3.Connection, ids: Iterable[int]) -> Dict[int, Bridge]:
    wanted = sorted({i for i in ids if i is not None})
    if not wanted:
        return {}
    marks = ", ".join("?" for _ in wanted)
    rows = conn.execute(
        f"SELECT * FROM bridges WHERE id IN ({marks}) AND deleted_at IS NULL",
        wanted,
    ).fetchall()
    return {row["id"]: Bridge.from_row(row) for row in rows}


def _load_users(conn: sqlite3.Connection, ids: Iterable[int]) -> Dict[int, User]:
    wanted = sorted({i for i in ids if i is not None})
    if not wanted:
        return {}
    marks = ", ".join("?" for _ in wanted)
    rows = conn.execute(
        f"SELECT * FROM users WHERE id IN ({marks}) AND deleted_at IS NULL",
        wanted,
    ).fetchall()
    return {row["id"]: User.from_row(row) for row in rows}


class _Repository(Generic[T]):
    table: str = ""
    record_type: Type = object
    soft_delete: bool = True

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    def _columns(self) -> List[str]:
        return [f.name for f in fields(self.record_type) if f.name not in _NON_COLUMNS]

    def _alive(self, prefix: str = "") -> str:
        return f" AND {prefix}deleted_at IS NULL" if self.soft_delete else ""

    def _insert(self, record) -> None:
        now = datetime.now()
        if record.created_at is None:
            record.created_at = now
        if record.updated_at is None:
            record.updated_at = now
        columns = self._columns()
        values = [getattr(record, name) for name in columns]
        if record.id is not None:
            columns = ["id", *columns]
            values = [record.id, *values]
        marks = ", ".join("?" for _ in columns)
        cursor = self.conn.execute(
            f"INSERT INTO {self.table} ({', '.join(columns)}) VALUES ({marks})",
            values,
        )
        record.id = cursor.lastrowid

    def _save(self, record) -> None:
        if record.id is None:
            self._insert(record)
            return
        record.updated_at = datetime.now()
        columns = self._columns()
        assignments = ", ".join(f"{name} = ?" for name in columns)
        cursor = self.conn.execute(
            f"UPDATE {self.table} SET {assignments} WHERE id = ?",
            [*(getattr(record, name) for name in columns), record.id],
        )
        if cursor.rowcount == 0:
            self._insert(record)

    def _create(self, record) -> None:
        with self.conn:
            self._insert(record)

    def _update(self, record) -> None:
        with self.conn:
            self._save(record)

    def _find_one(self, where: str, params: Sequence) -> Optional[T]:
        row = self.conn.execute(
            f"SELECT * FROM {self.table} WHERE {where}{self._alive()} ORDER BY id LIMIT 1",
            tuple(params),
        ).fetchone()
        return None if row is None else self.record_type.from_row(row)

    def _soft_delete(self, record_id: int) -> bool:
        with self.conn:
            cursor = self.conn.execute(
                f"UPDATE {self.table} SET deleted_at = ? WHERE id = ? AND deleted_at IS NULL",
                (datetime.now(), record_id),
            )
        return cursor.rowcount > 0

    def _list(
        self,
        page: int,
        page_size: int,
        where: str = "1 = 1",
        params: Sequence = (),
        order: str = "",
    ) -> Tuple[List[T], int]:
        condition = f"{where}{self._alive()}"
        (total,) = self.conn.execute(
            f"SELECT COUNT(*) FROM {self.table} WHERE {condition}", tuple(params)
        ).fetchone()
        tail, paging = _paging(page, page_size)
        order_clause = f" ORDER BY {order}" if order else ""
        rows = self.conn.execute(
            f"SELECT * FROM {self.table} WHERE {condition}{order_clause}{tail}",
            (*params, *paging),
        ).fetchall()
        return [self.record_type.from_row(row) for row in rows], total


class UserRepository(_Repository[User]):
    """Stores users; deletion is soft."""

    table = "users"
    record_type = User

    def create(self, user: User) -> User:
        self._create(user)
        return user

    def find_by_id(self, user_id: int) -> Optional[User]:
        return self._find_one("id = ?", (user_id,))

    def find_by_username(self, username: str) -> Optional[User]:
        return self._find_one("username = ?", (username,))

    def find_by_email(self, email: str) -> Optional[User]:
        return self._find_one("email = ?", (email,))

    def update(self, user: User) -> User:
        self._update(user)
        return user

    def delete(self, user_id: int) -> bool:
        return self._soft_delete(user_id)

    def list(self, page: int, page_size: int) -> Tuple[List[User], int]:
        return self._list(page, page_size, order="id")


class BridgeRepository(_Repository[Bridge]):
    """Stores bridges; deletion is soft and frees the bridge code."""

    table = "bridges"
    record_type = Bridge

    def create(self, bridge: Bridge) -> Bridge:
        self._create(bridge)
        return bridge

    def find_by_id(self, bridge_id: int) -> Optional[Bridge]:
        return self._find_one("id = ?", (bridge_id,))

    def find_by_code(self, code: str) -> Optional[Bridge]:
        return self._find_one("bridge_code = ?", (code,))

    def update(self, bridge: Bridge) -> Bridge:
        self._update(bridge)
        return bridge

    def delete(self, bridge_id: int) -> Bridge:
        """Rename the bridge code with a deletion stamp, then soft-delete it."""
        with self.conn:
            bridge = self._find_one("id = ?", (bridge_id,))
            if bridge is None:
                raise RecordNotFoundError(f"bridge {bridge_id} not found")
            bridge.bridge_code = f"{bridge.bridge_code}_deleted_{int(time.time())}"
            self._save(bridge)
            bridge.deleted_at = datetime.now()
            self.conn.execute(
                "UPDATE bridges SET deleted_at = ? WHERE id = ? AND deleted_at IS NULL",
                (bridge.deleted_at, bridge.id),
            )
        return bridge

    def list(self, page: int, page_size: int) -> Tuple[List[Bridge], int]:
        return self._list(page, page_size, order="created_at DESC, id DESC")

    def list_by_user_id(
        self, user_id: int, page: int, page_size: int
    ) -> Tuple[List[Bridge], int]:
        return self._list(
            page, page_size, "user_id = ?", (user_id,), "created_at DESC, id DESC"
        )


class DroneRepository(_Repository[Drone]):
    """Stores drones; deletion is permanent."""

    table = "drones"
    record_type = Drone
    soft_delete = False

    def create(self, drone: Drone) -> Drone:
        self._create(drone)
        return drone

    def find_by_id(self, drone_id: int) -> Optional[Drone]:
        return self._find_one("id = ?", (drone_id,))

    def update(self, drone: Drone) -> Drone:
        self._update(drone)
        return drone

    def delete(self, drone_id: int) -> bool:
        with self.conn:
            cursor = self.conn.execute("DELETE FROM drones WHERE id = ?", (drone_id,))
        return cursor.rowcount > 0

    def list(self, page: int, page_size: int) -> Tuple[List[Drone], int]:
        return self._list(page, page_size, order="created_at DESC, id DESC")

    def list_by_user_id(
        self, user_id: int, page: int, page_size: int
    ) -> Tuple[List[Drone], int]:
        return self._list(
            page, page_size, "user_id = ?", (user_id,), "created_at DESC, id DESC"
        )


class DefectRepository(_Repository[Defect]):
    """Stores defects; listings carry the bridge each defect belongs to."""

    table = "defects"
    record_type = Defect

    def _attach_bridges(self, defects: List[Defect]) -> List[Defect]:
        bridges = _load_bridges(self.conn, (d.bridge_id for d in defects))
        for defect in defects:
            defect.bridge = bridges.get(defect.bridge_id)
        return defects

    def create(self, defect: Defect) -> Defect:
        self._create(defect)
        return defect

    def find_by_id(self, defect_id: int) -> Optional[Defect]:
        defect = self._find_one("id = ?", (defect_id,))
        if defect is not None:
            self._attach_bridges([defect])
        return defect

    def delete(self, defect_id: int) -> bool:
        return self._soft_delete(defect_id)

    def list(self, filters: DefectListFilters) -> Tuple[List[Defect], int]:
        """List defects matching the filters; non-admins see only their bridges."""
        joins = ""
        conditions = ["defects.deleted_at IS NULL"]
        params: list = []
        user = filters.current_user
        if user is not None and not user.is_admin():
            joins = " JOIN bridges ON bridges.id = defects.bridge_id"
            conditions.append("bridges.user_id = ?")
            params.append(user.id)
        if filters.bridge_id is not None:
            conditions.append("defects.bridge_id = ?")
            params.append(filters.bridge_id)
        if filters.defect_type:
            conditions.append("defects.defect_type = ?")
            params.append(filters.defect_type)
        if filters.start_time is not None:
            conditions.append("defects.detected_at >= ?")
            params.append(filters.start_time)
        if filters.end_time is not None:
            conditions.append("defects.detected_at <= ?")
            params.append(filters.end_time)
        base = f"FROM defects{joins} WHERE {' AND '.join(conditions)}"
        (total,) = self.conn.execute(f"SELECT COUNT(*) {base}", params).fetchone()
        tail, paging = _paging(filters.page, filters.page_size)
        rows = self.conn.execute(
            f"SELECT defects.* {base} ORDER BY defects.detected_at DESC, defects.id DESC{tail}",
            (*params, *paging),
        ).fetchall()
        return self._attach_bridges([Defect.from_row(row) for row in rows]), total

    def list_by_bridge_id(
        self, bridge_id: int, page: int, page_size: int
    ) -> Tuple[List[Defect], int]:
        defects, total = self._list(
            page, page_size, "bridge_id = ?", (bridge_id,), "detected_at DESC, id DESC"
        )
        return self._attach_bridges(defects), total


class ReportRepository(_Repository[Report]):
    """Stores generated reports; deletion is soft."""

    table = "reports"
    record_type = Report

    def _attach_bridges(self, reports: List[Report]) -> List[Report]:
        bridges = _load_bridges(self.conn, (r.bridge_id for r in reports))
        for report in reports:
            report.bridge = bridges.get(report.bridge_id)
        return reports

    def create(self, report: Report) -> Report:
        self._create(report)
        return report

    def find_by_id(self, report_id: int) -> Report:
        report = self._find_one("id = ?", (report_id,))
        if report is None:
            raise RecordNotFoundError("报表不存在")
        report.user = _load_users(self.conn, [report.user_id]).get(report.user_id)
        self._attach_bridges([report])
        return report

    def update(self, report: Report) -> Report:
        self._update(report)
        return report

    def delete(self, report_id: int) -> bool:
        return self._soft_delete(report_id)

    def _filtered(
        self,
        page: int,
        page_size: int,
        conditions: List[str],
        params: list,
        report_type: Optional[str],
    ) -> Tuple[List[Report], int]:
        if report_type:
            conditions.append("report_type = ?")
            params.append(report_type)
        where = " AND ".join(conditions) if conditions else "1 = 1"
        reports, total = self._list(
            page, page_size, where, params, "created_at DESC, id DESC"
        )
        return self._attach_bridges(reports), total

    def list(
        self, page: int, page_size: int, report_type: Optional[str] = None
    ) -> Tuple[List[Report], int]:
        return self._filtered(page, page_size, [], [], report_type)

    def list_by_user_id(
        self,
        user_id: int,
        page: int,
        page_size: int,
        report_type: Optional[str] = None,
    ) -> Tuple[List[Report], int]:
        return self._filtered(page, page_size, ["user_id = ?"], [user_id], report_type)

    def list_by_bridge_id(
        self, bridge_id: int, page: int, page_size: int
    ) -> Tuple[List[Report], int]:
        return self._filtered(page, page_size, ["bridge_id = ?"], [bridge_id], None)

    def count_by_status(self, status: str) -> int:
        (count,) = self.conn.execute(
            "SELECT COUNT(*) FROM reports WHERE status = ? AND deleted_at IS NULL",
            (status,),
        ).fetchone()
        return count